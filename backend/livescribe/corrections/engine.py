from __future__ import annotations

import asyncio
import logging
import re
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from livescribe.core.logger import log_event
from livescribe.corrections.models import (
    AppliedCorrection,
    CorrectionOptions,
    CorrectionResult,
    CorrectionRule,
    Suggestion,
)
from livescribe.corrections.store import CorrectionStore
from livescribe.errors import DuplicateRule, InvalidRule, NotFound
from livescribe.system_metrics import increment_metric

logger = logging.getLogger("correction_engine")


def edit_distance(left: str, right: str) -> int:
    if left == right:
        return 0
    if not left:
        return len(right)
    if not right:
        return len(left)

    previous = list(range(len(right) + 1))
    for i, left_char in enumerate(left, start=1):
        current = [i] + [0] * len(right)
        for j, right_char in enumerate(right, start=1):
            cost = 0 if left_char == right_char else 1
            current[j] = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
        previous = current
    return previous[-1]


def similarity(left: str, right: str) -> float:
    """Levenshtein similarity in [0, 1], case-insensitive."""
    left = (left or "").lower()
    right = (right or "").lower()
    longest = max(len(left), len(right))
    if longest == 0:
        return 1.0
    return (longest - edit_distance(left, right)) / longest


def compile_rule(rule: CorrectionRule) -> re.Pattern:
    body = re.escape(rule.original_term)
    if rule.whole_word_only:
        body = rf"(?<!\w){body}(?!\w)"
    flags = 0 if rule.case_sensitive else re.IGNORECASE
    return re.compile(body, flags)


def order_rules(rules) -> list[CorrectionRule]:
    return sorted(rules, key=lambda rule: (-int(rule.usage_count), rule.original_term, rule.id))


def _substitute(pattern: re.Pattern, replacement: str, text: str) -> tuple[str, int, int]:
    """Replace every match. Returns (text, matches, rewrites); a rewrite is a match not already equal to ``replacement``."""
    matches = 0
    rewrites = 0

    def _swap(match: re.Match) -> str:
        nonlocal matches, rewrites
        matches += 1
        if match.group(0) != replacement:
            rewrites += 1
        return replacement

    return pattern.sub(_swap, text), matches, rewrites


@dataclass(frozen=True)
class CompiledRule:
    rule: CorrectionRule
    pattern: re.Pattern


@dataclass(frozen=True)
class CorrectionIndex:
    """Immutable snapshot of the active rules. Replaced whole, never mutated."""

    generation: int = 0
    rules: tuple[CorrectionRule, ...] = ()
    by_original: Mapping[str, CorrectionRule] = field(default_factory=lambda: MappingProxyType({}))
    auto_apply: tuple[CompiledRule, ...] = ()

    @classmethod
    def build(cls, rules, generation: int) -> "CorrectionIndex":
        ordered = order_rules(rule for rule in rules if rule.is_active)
        by_original: dict[str, CorrectionRule] = {}
        for rule in ordered:
            by_original.setdefault(rule.original_term.lower(), rule)
        compiled = tuple(CompiledRule(rule=rule, pattern=compile_rule(rule)) for rule in ordered if rule.auto_apply)
        return cls(
            generation=generation,
            rules=tuple(ordered),
            by_original=MappingProxyType(by_original),
            auto_apply=compiled,
        )


class CorrectionEngine:
    """
    Applies the global correction vocabulary to transcript text.

    Reads always go through the current ``CorrectionIndex`` reference, so a
    concurrent add/remove/reload is either fully visible or not at all. Usage
    counters are written to the store asynchronously and never slow down or
    fail ``apply_corrections``.
    """

    def __init__(self, store: CorrectionStore):
        self._store = store
        self._index = CorrectionIndex()
        self._write_lock = asyncio.Lock()
        self._usage_lock = threading.Lock()
        self._pending_usage: dict[tuple[int, Optional[str]], int] = {}
        self._flush_task: Optional[asyncio.Task] = None

    @property
    def store(self) -> CorrectionStore:
        return self._store

    @property
    def index(self) -> CorrectionIndex:
        return self._index

    @property
    def generation(self) -> int:
        return self._index.generation

    async def load(self) -> int:
        async with self._write_lock:
            await self._rebuild()
        log_event("corrections", "corrections_loaded", "", count=len(self._index.rules), generation=self.generation)
        return len(self._index.rules)

    async def reload(self) -> int:
        return await self.load()

    async def _rebuild(self) -> None:
        rules = await self._store.load_active()
        self._index = CorrectionIndex.build(rules, generation=self._index.generation + 1)

    def apply_corrections(self, text: str, conversation_id: Optional[str] = None) -> CorrectionResult:
        if not isinstance(text, str) or not text:
            return CorrectionResult(text=text if isinstance(text, str) else "")

        index = self._index
        corrected = text
        applied: list[AppliedCorrection] = []
        for compiled in index.auto_apply:
            rule = compiled.rule
            corrected, matches, rewrites = _substitute(compiled.pattern, rule.corrected_term, corrected)
            if matches:
                self._queue_usage(rule.id, conversation_id, matches)
            if not rewrites:
                continue
            applied.append(
                AppliedCorrection(
                    id=rule.id,
                    original=rule.original_term,
                    corrected=rule.corrected_term,
                    category=rule.category,
                    count=rewrites,
                )
            )

        if applied:
            increment_metric("corrections_applied", sum(item.count for item in applied))
        return CorrectionResult(text=corrected, applied=tuple(applied), changed=corrected != text)

    def find_suggestions(self, term: str, limit: int = 5) -> list[Suggestion]:
        needle = str(term or "").strip().lower()
        if not needle or limit <= 0:
            return []

        index = self._index
        suggestions: list[Suggestion] = []
        exact = index.by_original.get(needle)
        if exact is not None:
            suggestions.append(
                Suggestion(
                    type="exact",
                    original=exact.original_term,
                    corrected=exact.corrected_term,
                    confidence=1.0,
                    category=exact.category,
                )
            )

        partial: list[Suggestion] = []
        for original, rule in index.by_original.items():
            if original == needle:
                continue
            if needle in original or original in needle:
                partial.append(
                    Suggestion(
                        type="partial",
                        original=rule.original_term,
                        corrected=rule.corrected_term,
                        confidence=similarity(needle, original),
                        category=rule.category,
                    )
                )
        partial.sort(key=lambda item: (-item.confidence, item.original))
        suggestions.extend(partial)
        return suggestions[:limit]

    async def add_correction(
        self,
        original_term: str,
        corrected_term: str,
        options: CorrectionOptions | None = None,
    ) -> CorrectionRule:
        original = str(original_term or "").strip()
        corrected = str(corrected_term or "").strip()
        if not original or not corrected:
            raise InvalidRule("Original and corrected terms are required")
        if original == corrected:
            raise InvalidRule("Original and corrected terms cannot be the same")

        async with self._write_lock:
            if await self._store.find_active_pair(original, corrected) is not None:
                raise DuplicateRule(original, corrected)
            rule = await self._store.insert(original, corrected, options or CorrectionOptions())
            await self._rebuild()

        log_event(
            "corrections",
            "correction_added",
            "",
            rule_id=rule.id,
            category=rule.category,
            generation=self.generation,
        )
        return rule

    async def remove_correction(self, correction_id: int) -> CorrectionRule:
        async with self._write_lock:
            rule = await self._store.deactivate(int(correction_id))
            if rule is None:
                raise NotFound(correction_id)
            await self._rebuild()

        log_event("corrections", "correction_removed", "", rule_id=rule.id, generation=self.generation)
        return rule

    async def list_corrections(self) -> list[CorrectionRule]:
        return order_rules(await self._store.load_active())

    async def statistics(self) -> dict[str, Any]:
        rules = order_rules(await self._store.load_active())
        return {
            "total_corrections": len(rules),
            "auto_apply_count": sum(1 for rule in rules if rule.auto_apply),
            "total_applications": sum(int(rule.usage_count) for rule in rules),
            "categories_count": len({rule.category for rule in rules}),
            "top_corrections": [
                {
                    "original_term": rule.original_term,
                    "corrected_term": rule.corrected_term,
                    "usage_count": rule.usage_count,
                }
                for rule in rules[:10]
            ],
            "generation": self.generation,
        }

    def pending_usage(self) -> dict[tuple[int, Optional[str]], int]:
        with self._usage_lock:
            return dict(self._pending_usage)

    def _queue_usage(self, rule_id: int, conversation_id: Optional[str], count: int) -> None:
        key = (int(rule_id), conversation_id or None)
        with self._usage_lock:
            self._pending_usage[key] = self._pending_usage.get(key, 0) + int(count)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # no loop: deltas wait for the next flush_usage()
            return
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = loop.create_task(self.flush_usage())

    async def flush_usage(self) -> int:
        """Write pending usage deltas to the store. Returns the number of rules written."""
        written = 0
        while True:
            with self._usage_lock:
                pending, self._pending_usage = self._pending_usage, {}
            if not pending:
                return written

            for (rule_id, conversation_id), count in pending.items():
                try:
                    await self._store.increment_usage(rule_id, count)
                    if conversation_id:
                        await self._store.record_application(rule_id, conversation_id, count)
                    written += 1
                except Exception as exc:
                    increment_metric("correction_usage_write_failures")
                    logger.warning(
                        "correction usage write failed | rule_id=%s conversation_id=%s err=%s",
                        rule_id,
                        conversation_id,
                        exc,
                    )

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        await self.flush_usage()
