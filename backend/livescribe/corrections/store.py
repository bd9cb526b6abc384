from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import replace
from typing import Any, Optional, Protocol

from livescribe.core.config import CORRECTION_STORE
from livescribe.corrections.models import CorrectionOptions, CorrectionRule

logger = logging.getLogger("livescribe.corrections.store")


# (original, corrected, category)
DEFAULT_VOCABULARY: tuple[tuple[str, str, str], ...] = (
    ("Sirena", "Serena", "names"),
    ("Antrhopic", "Anthropic", "companies"),
    ("Clawd", "Claude", "ai"),
    ("gpt", "GPT", "ai"),
    ("api", "API", "technical"),
    ("kubernetes", "Kubernetes", "technical"),
    ("postgresql", "PostgreSQL", "technical"),
    ("javascript", "JavaScript", "technical"),
    ("typescript", "TypeScript", "technical"),
    ("react", "React", "technical"),
)


class CorrectionStore(Protocol):
    async def load_active(self) -> list[CorrectionRule]:
        ...

    async def find_active_pair(self, original_term: str, corrected_term: str) -> Optional[CorrectionRule]:
        ...

    async def insert(self, original_term: str, corrected_term: str, options: CorrectionOptions) -> CorrectionRule:
        ...

    async def deactivate(self, rule_id: int) -> Optional[CorrectionRule]:
        ...

    async def increment_usage(self, rule_id: int, amount: int) -> None:
        ...

    async def record_application(self, rule_id: int, conversation_id: str, amount: int) -> None:
        ...


class InMemoryCorrectionStore:
    def __init__(self, seed_defaults: bool = False):
        self._lock = threading.Lock()
        self._rules: dict[int, CorrectionRule] = {}
        self._applications: list[dict[str, Any]] = []
        self._next_id = 1
        if seed_defaults:
            for original, corrected, category in DEFAULT_VOCABULARY:
                self._insert_locked(original, corrected, CorrectionOptions(category=category))

    def _insert_locked(self, original_term: str, corrected_term: str, options: CorrectionOptions) -> CorrectionRule:
        rule = CorrectionRule(
            id=self._next_id,
            original_term=original_term,
            corrected_term=corrected_term,
            category=options.category,
            confidence_threshold=options.confidence_threshold,
            auto_apply=options.auto_apply,
            case_sensitive=options.case_sensitive,
            whole_word_only=options.whole_word_only,
            created_by_user_id=options.created_by_user_id,
        )
        self._rules[rule.id] = rule
        self._next_id += 1
        return rule

    @property
    def applications(self) -> list[dict[str, Any]]:
        with self._lock:
            return list(self._applications)

    async def load_active(self) -> list[CorrectionRule]:
        with self._lock:
            return [rule for rule in self._rules.values() if rule.is_active]

    async def find_active_pair(self, original_term: str, corrected_term: str) -> Optional[CorrectionRule]:
        original = original_term.lower()
        corrected = corrected_term.lower()
        with self._lock:
            for rule in self._rules.values():
                if (
                    rule.is_active
                    and rule.original_term.lower() == original
                    and rule.corrected_term.lower() == corrected
                ):
                    return rule
        return None

    async def insert(self, original_term: str, corrected_term: str, options: CorrectionOptions) -> CorrectionRule:
        with self._lock:
            return self._insert_locked(original_term, corrected_term, options)

    async def deactivate(self, rule_id: int) -> Optional[CorrectionRule]:
        with self._lock:
            rule = self._rules.get(int(rule_id))
            if rule is None or not rule.is_active:
                return None
            updated = replace(rule, is_active=False)
            self._rules[updated.id] = updated
            return updated

    async def increment_usage(self, rule_id: int, amount: int) -> None:
        with self._lock:
            rule = self._rules.get(int(rule_id))
            if rule is None:
                return
            self._rules[rule.id] = replace(rule, usage_count=rule.usage_count + int(amount), last_used=time.time())

    async def record_application(self, rule_id: int, conversation_id: str, amount: int) -> None:
        with self._lock:
            self._applications.append(
                {
                    "correction_id": int(rule_id),
                    "conversation_id": conversation_id,
                    "applications": int(amount),
                    "applied_at": time.time(),
                }
            )


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_rule(row: dict[str, Any]) -> CorrectionRule:
    return CorrectionRule(
        id=int(row["id"]),
        original_term=str(row.get("original_term") or ""),
        corrected_term=str(row.get("corrected_term") or ""),
        category=str(row.get("category") or "general"),
        confidence_threshold=float(row.get("confidence_threshold") or 0.8),
        auto_apply=bool(row.get("auto_apply", True)),
        case_sensitive=bool(row.get("case_sensitive", False)),
        whole_word_only=bool(row.get("whole_word_only", True)),
        usage_count=int(row.get("usage_count") or 0),
        is_active=bool(row.get("is_active", True)),
        created_by_user_id=row.get("created_by_user_id"),
    )


class SupabaseCorrectionStore:
    """
    Rules live in ``global_corrections``; per-conversation usage in
    ``correction_applications``. Usage increments go through the
    ``increment_correction_usage`` database function so concurrent writers do
    not lose updates.
    """

    def __init__(self, client=None):
        if client is None:
            from livescribe.db.supabase import get_supabase_client

            client = get_supabase_client()
        self._client = client

    def _load_active(self) -> list[CorrectionRule]:
        res = (
            self._client
            .table("global_corrections")
            .select("*")
            .eq("is_active", True)
            .order("usage_count", desc=True)
            .order("original_term")
            .execute()
        )
        return [_row_to_rule(row) for row in (getattr(res, "data", None) or [])]

    def _find_active_pair(self, original_term: str, corrected_term: str) -> Optional[CorrectionRule]:
        res = (
            self._client
            .table("global_corrections")
            .select("*")
            .ilike("original_term", _escape_like(original_term))
            .ilike("corrected_term", _escape_like(corrected_term))
            .eq("is_active", True)
            .limit(1)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return _row_to_rule(rows[0]) if rows else None

    def _insert(self, original_term: str, corrected_term: str, options: CorrectionOptions) -> CorrectionRule:
        res = (
            self._client
            .table("global_corrections")
            .insert(
                {
                    "original_term": original_term,
                    "corrected_term": corrected_term,
                    "category": options.category,
                    "confidence_threshold": options.confidence_threshold,
                    "auto_apply": options.auto_apply,
                    "case_sensitive": options.case_sensitive,
                    "whole_word_only": options.whole_word_only,
                    "created_by_user_id": options.created_by_user_id,
                }
            )
            .execute()
        )
        rows = getattr(res, "data", None) or []
        if not rows:
            raise RuntimeError("global_corrections insert returned no row")
        return _row_to_rule(rows[0])

    def _deactivate(self, rule_id: int) -> Optional[CorrectionRule]:
        res = (
            self._client
            .table("global_corrections")
            .update({"is_active": False})
            .eq("id", int(rule_id))
            .eq("is_active", True)
            .execute()
        )
        rows = getattr(res, "data", None) or []
        return _row_to_rule(rows[0]) if rows else None

    def _increment_usage(self, rule_id: int, amount: int) -> None:
        self._client.rpc(
            "increment_correction_usage",
            {"p_correction_id": int(rule_id), "p_amount": int(amount)},
        ).execute()

    def _record_application(self, rule_id: int, conversation_id: str, amount: int) -> None:
        self._client.table("correction_applications").insert(
            {
                "correction_id": int(rule_id),
                "conversation_id": conversation_id,
                "applications": int(amount),
            }
        ).execute()

    async def load_active(self) -> list[CorrectionRule]:
        return await asyncio.to_thread(self._load_active)

    async def find_active_pair(self, original_term: str, corrected_term: str) -> Optional[CorrectionRule]:
        return await asyncio.to_thread(self._find_active_pair, original_term, corrected_term)

    async def insert(self, original_term: str, corrected_term: str, options: CorrectionOptions) -> CorrectionRule:
        return await asyncio.to_thread(self._insert, original_term, corrected_term, options)

    async def deactivate(self, rule_id: int) -> Optional[CorrectionRule]:
        return await asyncio.to_thread(self._deactivate, rule_id)

    async def increment_usage(self, rule_id: int, amount: int) -> None:
        await asyncio.to_thread(self._increment_usage, rule_id, amount)

    async def record_application(self, rule_id: int, conversation_id: str, amount: int) -> None:
        await asyncio.to_thread(self._record_application, rule_id, conversation_id, amount)


def build_correction_store(kind: str | None = None) -> CorrectionStore:
    selected = str(kind or CORRECTION_STORE or "memory").strip().lower()
    if selected == "memory":
        return InMemoryCorrectionStore(seed_defaults=True)
    if selected == "supabase":
        return SupabaseCorrectionStore()
    raise RuntimeError(f"Unknown CORRECTION_STORE '{selected}' (expected 'memory' or 'supabase')")
