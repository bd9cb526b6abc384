from fastapi import APIRouter, HTTPException, Query

from livescribe.corrections.models import CorrectionOptions
from livescribe.errors import DuplicateRule, InvalidRule, NotFound
from livescribe.runtime import get_runtime
from livescribe.schemas import ApplyCorrectionsRequest, ApplyCorrectionsResponse, CorrectionCreateRequest, SuggestionModel

router = APIRouter(prefix="/api/corrections")


@router.get("")
async def list_corrections():
    rules = await get_runtime().engine.list_corrections()
    return {"corrections": [rule.to_dict() for rule in rules]}


@router.post("", status_code=201)
async def create_correction(req: CorrectionCreateRequest):
    try:
        options = CorrectionOptions.from_mapping(req.options)
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid correction options: {exc}")

    try:
        rule = await get_runtime().engine.add_correction(req.original, req.corrected, options)
    except InvalidRule as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except DuplicateRule as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return rule.to_dict()


@router.delete("/{correction_id}")
async def delete_correction(correction_id: int):
    try:
        rule = await get_runtime().engine.remove_correction(correction_id)
    except NotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"id": rule.id, "is_active": rule.is_active}


@router.get("/suggestions/{term}", response_model=list[SuggestionModel])
async def correction_suggestions(term: str, limit: int = Query(default=5, ge=0, le=50)):
    return [item.to_dict() for item in get_runtime().engine.find_suggestions(term, limit=limit)]


@router.post("/apply", response_model=ApplyCorrectionsResponse)
async def apply_corrections(req: ApplyCorrectionsRequest):
    result = get_runtime().engine.apply_corrections(req.text, conversation_id=req.conversation_id)
    return result.to_dict()


@router.get("/stats")
async def correction_stats():
    return await get_runtime().engine.statistics()
