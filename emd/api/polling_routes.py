"""EMD — Polling Control API Routes."""

from fastapi import APIRouter, Depends

from emd.analyzer.pipeline import Poller
from emd.api.dependencies import get_poller
from emd.models.cycle_models import CycleReport, PollerHealth, PollerStatus
from emd.core.logging import get_logger

logger = get_logger("api.polling")

router = APIRouter(prefix="/polling", tags=["Polling"])


@router.get("/status", response_model=PollerStatus)
async def polling_status(poller: Poller = Depends(get_poller)):
    return poller.status()


@router.get("/health", response_model=PollerHealth)
async def polling_health(poller: Poller = Depends(get_poller)):
    return poller.health()


@router.post("/start", response_model=PollerStatus)
async def start_polling(poller: Poller = Depends(get_poller)):
    """Start the interval job and run a first cycle immediately."""
    await poller.start()
    return poller.status()


@router.post("/stop", response_model=PollerStatus)
async def stop_polling(poller: Poller = Depends(get_poller)):
    """Stop scheduling; waits for an in-flight cycle to complete."""
    await poller.stop()
    return poller.status()


@router.post("/run")
async def run_cycle_now(poller: Poller = Depends(get_poller)):
    """Run one cycle on demand. Returns ``skipped`` if a cycle is in flight."""
    report: CycleReport | None = await poller.run_cycle()
    if report is None:
        return {"status": "skipped", "report": None}
    logger.info(f"Manual cycle {report.cycle} finished (success={report.success})")
    return {"status": "ok" if report.success else "failed", "report": report}


@router.get("/stats")
async def polling_stats(poller: Poller = Depends(get_poller)):
    """Alert, dedup, cache and persistence counters in one payload."""
    return poller.statistics()


@router.post("/reset", response_model=PollerStatus)
async def reset_polling_stats(poller: Poller = Depends(get_poller)):
    poller.reset_stats()
    return poller.status()
