"""EMD — Rule Engine.

Runs every rule against every job. A rule that raises is logged and treated
as non-triggering for that job only; it never aborts the cycle.
"""

from datetime import datetime, timezone
from typing import List, Mapping, Optional, Sequence

from emd.analyzer.rules import Rule, RuleContext, default_rules
from emd.core.field_registry import unknown_fields
from emd.models.alert_models import TriggerResult
from emd.models.job_models import JobSnapshot, VerificationData
from emd.core.logging import get_logger

logger = get_logger("analyzer.rules")


class RuleEngine:
    """Evaluates an ordered, independent set of rules."""

    def __init__(
        self,
        rules: Optional[Sequence[Rule]] = None,
        custom_rules: Sequence[Rule] = (),
    ):
        all_rules = list(rules if rules is not None else default_rules()) + list(
            custom_rules
        )
        seen: set[str] = set()
        for rule in all_rules:
            if rule.id in seen:
                raise ValueError(f"Duplicate rule id: {rule.id}")
            seen.add(rule.id)
            unknown = unknown_fields(rule.reads)
            if unknown:
                raise ValueError(
                    f"Rule {rule.id} reads unregistered fields: {sorted(unknown)}"
                )
        self.rules: List[Rule] = all_rules
        self.failures = 0

    def evaluate_job(self, job: JobSnapshot, ctx: RuleContext) -> List[TriggerResult]:
        """Evaluate all rules for a single job."""
        results: List[TriggerResult] = []
        for rule in self.rules:
            try:
                if not rule.predicate(job, ctx):
                    continue
                results.append(
                    TriggerResult(
                        rule_id=rule.id,
                        rule_name=rule.name,
                        severity=rule.severity,
                        message=rule.message(job, ctx),
                        entity_id=job.entity_id,
                    )
                )
            except Exception as e:
                self.failures += 1
                logger.error(
                    f"Error evaluating rule {rule.id} for job {job.entity_id}: {e}",
                    extra={"rule_id": rule.id, "entity_id": job.entity_id},
                )
        return results

    def evaluate(
        self,
        jobs: Sequence[JobSnapshot],
        verification: Optional[Mapping[str, VerificationData]] = None,
        now: Optional[datetime] = None,
    ) -> List[TriggerResult]:
        """Evaluate all rules against all jobs and collect every trigger."""
        ctx = RuleContext(
            now=now or datetime.now(timezone.utc),
            verification=verification or {},
        )
        results: List[TriggerResult] = []
        for job in jobs:
            results.extend(self.evaluate_job(job, ctx))
        logger.info(
            f"Evaluated {len(self.rules)} rules against {len(jobs)} jobs: "
            f"{len(results)} triggers"
        )
        return results
