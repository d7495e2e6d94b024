import logging
import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple

from pipelines.lib.engine_config import DEFAULT_CONFIG, EngineConfig
from pipelines.lib.table_models import ColumnMapping, MappingResult

_NORMALIZE_RE = re.compile(r"[_\s-]")


def normalize_header(header: str) -> str:
    return _NORMALIZE_RE.sub("", str(header or "").lower())


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class SchemaReconciler:
    """Aligns uploaded headers to a required schema with a one-to-one greedy pass."""

    def __init__(self, config: EngineConfig = DEFAULT_CONFIG) -> None:
        self.config = config

    def score(self, header: str, required: str) -> float:
        norm_h = normalize_header(header)
        norm_r = normalize_header(required)
        if not norm_h or not norm_r:
            return 0.0
        if norm_h == norm_r:
            return self.config.exact_match_score
        best = 0.0
        if norm_h in norm_r or norm_r in norm_h:
            best = self.config.substring_match_score
        for pattern, target in self.config.header_patterns:
            if target == required and pattern.search(str(header)):
                best = max(best, self.config.pattern_match_score)
        return best

    def best_match(self, header: str, required_headers: Sequence[str]) -> Tuple[Optional[str], float]:
        """Highest-scoring required header; on a shared top score the first one listed wins."""
        best: Optional[str] = None
        best_score = 0.0
        for required in required_headers:
            s = self.score(header, required)
            if s > best_score:
                best, best_score = required, s
        return best, best_score

    def synthesize(self, current_headers: Sequence[str], required_headers: Sequence[str]) -> List[ColumnMapping]:
        out: List[ColumnMapping] = []
        for header in current_headers:
            target, s = self.best_match(header, required_headers)
            if target is None or s < self.config.synthesis_min_score:
                continue
            out.append(
                ColumnMapping(
                    original_header=str(header),
                    suggested_header=target,
                    confidence=s,
                    reasoning=f"Pattern-based match ({round(s * 100)}% confidence)",
                )
            )
        return out

    def accept(
        self,
        candidates: Iterable[Any],
        current_headers: Sequence[str],
        required_headers: Sequence[str],
    ) -> MappingResult:
        current = [str(h) for h in current_headers]
        required = [str(h) for h in required_headers]
        used_sources: set = set()
        used_targets: set = set()
        accepted: List[ColumnMapping] = []
        rejected = 0
        for raw in candidates or []:
            mapping = ColumnMapping.from_payload(raw)
            if (
                mapping is None
                or mapping.confidence < self.config.accept_min_confidence
                or mapping.original_header not in current
                or mapping.suggested_header not in required
                or mapping.original_header in used_sources
                or mapping.suggested_header in used_targets
            ):
                rejected += 1
                continue
            accepted.append(mapping)
            used_sources.add(mapping.original_header)
            used_targets.add(mapping.suggested_header)

        if rejected:
            logging.info("event=schema_candidates_rejected count=%s", rejected)
        return MappingResult(
            mappings=accepted,
            unmapped_columns=[h for h in current if h not in used_sources],
            missing_columns=[h for h in required if h not in used_targets],
            confidence=_mean([m.confidence for m in accepted]),
        )

    def reconcile(
        self,
        current_headers: Sequence[str],
        required_headers: Sequence[str],
        candidates: Optional[Iterable[Any]] = None,
    ) -> MappingResult:
        synthesized = candidates is None
        if synthesized:
            candidates = self.synthesize(current_headers, required_headers)
        result = self.accept(candidates, current_headers, required_headers)
        logging.info(
            "event=schema_reconciled source=%s mapped=%s unmapped=%s missing=%s confidence=%.3f",
            "local" if synthesized else "candidates",
            len(result.mappings),
            len(result.unmapped_columns),
            len(result.missing_columns),
            result.confidence,
        )
        return result

    def reconcile_file_type(
        self,
        file_type: str,
        current_headers: Sequence[str],
        candidates: Optional[Iterable[Any]] = None,
    ) -> MappingResult:
        required = self.config.required_headers(file_type)
        if required is None:
            raise ValueError(f"invalid_file_type:{file_type}")
        return self.reconcile(current_headers, required, candidates)
