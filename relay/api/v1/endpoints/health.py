from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request) -> dict:
    runner = getattr(request.app.state, "outbox_runner", None)
    return {
        "status": "ok",
        "outbox_runner": bool(runner and runner.started),
    }
