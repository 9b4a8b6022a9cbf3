"""Per-product enrichment: independent stages, each with its own status.

A stage that raises is recorded as failed and the remaining stages still
run; the caller gets a status per stage rather than a single boolean.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models.product_analysis import ProductAnalysis

STAGE_PENDING = "pending"
STAGE_PROCESSING = "processing"
STAGE_COMPLETED = "completed"
STAGE_FAILED = "failed"
STAGE_SKIPPED = "skipped"

SETTLED = {STAGE_COMPLETED, STAGE_FAILED, STAGE_SKIPPED}

STAGE_ORDER = ("categories", "images", "shopping", "advanced", "marketplace_attributes", "media")

# Queue enrichment types that map onto one orchestrator stage
STAGE_ALIASES = {
    "amazon": "shopping",
    "ai_images": "images",
    "specifications": "advanced",
    "technical_description": "advanced",
    "cost_analysis": "advanced",
    "rsgp": "advanced",
    "compliance": "advanced",
    "odoo": "marketplace_attributes",
    "odoo_attributes": "marketplace_attributes",
    "video": "media",
}

logger = logging.getLogger(__name__)


@dataclass
class StageResult:
    status: str
    detail: Any = None
    error: Optional[str] = None
    substeps: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        data = {"status": self.status}
        if self.error:
            data["error"] = self.error
        if self.substeps:
            data["substeps"] = dict(self.substeps)
        return data


@dataclass
class StageContext:
    """What every stage sees: the product fields and the analysis row it writes to."""

    user_id: str
    product: Dict[str, Any]
    analysis: Optional[ProductAnalysis] = None
    db: Optional[Session] = None


@dataclass
class StageDescriptor:
    name: str
    run: Callable[[StageContext], Awaitable[StageResult]]


@dataclass
class OrchestrationResult:
    stages: Dict[str, StageResult]

    def names_with(self, status: str) -> List[str]:
        return [name for name, result in self.stages.items() if result.status == status]

    @property
    def succeeded(self) -> List[str]:
        return self.names_with(STAGE_COMPLETED)

    @property
    def failed(self) -> List[str]:
        return self.names_with(STAGE_FAILED)

    @property
    def skipped(self) -> List[str]:
        return self.names_with(STAGE_SKIPPED)

    @property
    def progress(self) -> int:
        return overall_progress(self.stages)

    def to_dict(self) -> dict:
        return {
            "stages": {name: result.to_dict() for name, result in self.stages.items()},
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "progress": self.progress,
        }


def overall_progress(stages: Dict[str, StageResult]) -> int:
    """round(100 * settled / total); 100 once every stage settled, failed ones included."""
    if not stages:
        return 100
    settled = sum(1 for result in stages.values() if result.status in SETTLED)
    return round(100 * settled / len(stages))


def normalize_stages(names: Iterable[str]) -> List[str]:
    """Map queue enrichment types onto stage names, deduplicated, in pipeline order."""
    wanted = set()
    unknown = []
    for name in names or []:
        stage = STAGE_ALIASES.get(name, name)
        if stage in STAGE_ORDER:
            wanted.add(stage)
        elif stage not in unknown:
            unknown.append(stage)
    return [stage for stage in STAGE_ORDER if stage in wanted] + unknown


StatusListener = Callable[[str, StageResult, int], None]


class EnrichmentOrchestrator:
    """
    Run enabled stages and collect one StageResult per stage.

    Stages run one after another by default; with `concurrent=True` they are
    gathered on the event loop. Either way a stage exception stops at the
    stage boundary.
    """

    def __init__(self, stages: Iterable[StageDescriptor], listener: Optional[StatusListener] = None):
        self.stages = {descriptor.name: descriptor for descriptor in stages}
        self.listener = listener

    def _notify(self, name: str, results: Dict[str, StageResult]) -> None:
        if self.listener is None:
            return
        try:
            self.listener(name, results[name], overall_progress(results))
        except Exception as e:
            logger.warning(f"⚠️ Could not record status of stage {name}: {e}")

    async def _run_stage(self, name: str, context: StageContext, results: Dict[str, StageResult]) -> None:
        descriptor = self.stages.get(name)
        if descriptor is None:
            results[name] = StageResult(STAGE_SKIPPED, error=f"Unknown stage '{name}'")
            self._notify(name, results)
            return

        results[name] = StageResult(STAGE_PROCESSING)
        self._notify(name, results)
        try:
            outcome = await descriptor.run(context)
        except Exception as e:
            logger.error(f"❌ Stage '{name}' failed: {e}")
            outcome = StageResult(STAGE_FAILED, error=str(e))
        else:
            logger.info(f"✅ Stage '{name}' {outcome.status}")

        results[name] = outcome
        self._notify(name, results)

    async def run(self, context: StageContext, enabled: Iterable[str], concurrent: bool = False) -> OrchestrationResult:
        names = normalize_stages(enabled)
        results = {name: StageResult(STAGE_PENDING) for name in names}
        logger.info(f"🧩 Enriching '{context.product.get('product_name')}' with stages {names}")

        if concurrent:
            await asyncio.gather(*(self._run_stage(name, context, results) for name in names))
        else:
            for name in names:
                await self._run_stage(name, context, results)

        outcome = OrchestrationResult(results)
        logger.info(
            f"🏁 Enrichment finished: succeeded={outcome.succeeded}, failed={outcome.failed}, skipped={outcome.skipped}"
        )
        return outcome


class AnalysisStatusRecorder:
    """Listener persisting stage statuses and overall progress on a ProductAnalysis."""

    def __init__(self, db: Session, analysis: ProductAnalysis):
        self.db = db
        self.analysis = analysis

    def __call__(self, name: str, result: StageResult, progress: int) -> None:
        statuses = dict(self.analysis.enrichment_status or {})
        statuses[name] = result.to_dict()
        self.analysis.enrichment_status = statuses
        self.analysis.enrichment_progress = progress
        self.db.commit()
