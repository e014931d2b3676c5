# file: agents/pipeline.py
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from agents.curator import Curator
from agents.validator import CandidateValidator
from agents.verifier import ContactVerifier
from app.schema import FilterConfig, FilterStats, Supplier
from app.tools.reachability import ReachabilityChecker

log = logging.getLogger("pipeline")

MAX_LOGGED_REJECTIONS = 10


@dataclass
class FilterResult:
    suppliers: List[Supplier]
    stats: FilterStats
    warnings: List[str] = field(default_factory=list)


class CandidateFilterPipeline:
    """
    Five stages, in order:
      1. shape extraction      (fatal on failure)
      2. schema gate           (fatal when nothing survives)
      3. website reachability  (falls back to the schema-valid set below the floor)
      4. contact verification
      5. truncation + Supplier mapping
    """

    def __init__(self, validator: Optional[CandidateValidator] = None,
                 reachability: Optional[ReachabilityChecker] = None,
                 verifier: Optional[ContactVerifier] = None):
        self.validator = validator or CandidateValidator()
        self.reachability = reachability or ReachabilityChecker()
        self.verifier = verifier or ContactVerifier()

    async def filter(self, payload: Any, run_id: str, config: FilterConfig) -> FilterResult:
        stats = FilterStats()
        warnings: List[str] = []

        report = self.validator.validate(payload)
        stats.schema_valid = len(report.accepted)
        stats.schema_rejected = len(report.rejected)
        stats.received = stats.schema_valid + stats.schema_rejected
        for r in report.rejected[:MAX_LOGGED_REJECTIONS]:
            log.info("Schema reject %s", r.summary())

        split = await self.reachability.filter(report.accepted, require_accessible=config.require_reachable)
        stats.reachable = len(split.valid)
        stats.unreachable = len(split.invalid)
        stage3 = split.valid
        if len(split.valid) < config.fallback_floor:
            stats.reachability_fallback = True
            stage3 = report.accepted
            msg = (f"Only {len(split.valid)} reachable websites (floor {config.fallback_floor}); "
                   f"continuing with all {len(report.accepted)} schema-valid candidates")
            log.warning(msg)
            warnings.append(msg)

        verification = await self.verifier.verify_all(
            stage3, concurrency=config.verification_concurrency, timeout=config.verification_timeout)
        stats.verified = len(verification.verified)
        stats.verification_rejected = len(verification.rejected)
        for item in verification.rejected[:MAX_LOGGED_REJECTIONS]:
            log.warning("Verification reject %s (%s): %s",
                        item.candidate.company_name, item.candidate.website, item.result.reason)

        survivors = [item.candidate for item in verification.verified]
        suppliers = Curator(config.high_priority_count).run(survivors, run_id, config.max_suppliers)
        stats.selected = len(suppliers)
        if len(suppliers) < config.min_suppliers:
            stats.shortfall = config.min_suppliers - len(suppliers)
            msg = f"Only {len(suppliers)} suppliers passed verification (minimum {config.min_suppliers})"
            log.warning(msg)
            warnings.append(msg)

        log.info("Run %s: %d received, %d schema-valid, %d reachable, %d verified, %d selected",
                 run_id, stats.received, stats.schema_valid, stats.reachable, stats.verified, stats.selected)
        return FilterResult(suppliers=suppliers, stats=stats, warnings=warnings)
