from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from certdesk.dependencies.tickets import get_ticket_store
from certdesk.errors import StorageUnavailableError
from certdesk.tickets.store import TicketStore

router = APIRouter(prefix="/health", tags=["health"])


@router.get("", summary="Public health probe with ticket count")
async def health(store: Annotated[TicketStore, Depends(get_ticket_store)]):
    try:
        total = await store.count()
    except StorageUnavailableError as exc:
        return JSONResponse(status_code=503, content={"status": "degraded", "detail": str(exc)})
    return {"status": "ok", "tickets": total}
