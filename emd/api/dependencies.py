"""EMD — Shared API Dependencies."""

from fastapi import HTTPException, Request

from emd.analyzer.pipeline import Poller


def get_poller(request: Request) -> Poller:
    """Dependency — the poller attached to the running app."""
    poller = getattr(request.app.state, "poller", None)
    if poller is None:
        raise HTTPException(status_code=503, detail="Poller not configured")
    return poller
