import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from services.document_store import DocumentStore
from services.habit_job_service import run_action
from services.job_errors import InputError, JobError
from services.push_gateway import PushGateway, get_push_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["jobs"])


def get_document_store() -> DocumentStore:
    return DocumentStore()


def get_gateway() -> PushGateway:
    return get_push_gateway()


@router.post("/habit-repeat")
async def habit_repeat(
    request: Request,
    store: DocumentStore = Depends(get_document_store),
    gateway: PushGateway = Depends(get_gateway),
):
    """Run one scheduled habit job action named in the request body."""
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    try:
        result = await run_action(body, store, gateway)
    except InputError as e:
        return JSONResponse(status_code=e.status_code, content={"error": e.message})
    except JobError as e:
        logger.error(f"Habit job {body.get('action')} failed: {e.message}")
        return JSONResponse(status_code=e.status_code, content={"error": e.message})

    return {**body, "result": result.summary}
