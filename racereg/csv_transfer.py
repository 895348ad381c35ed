from __future__ import annotations

import logging
from datetime import date

from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from . import services
from .auth import admin_required, staff_required
from .csv_io import with_bom
from .locks import LockBackend, get_locks
from .reconciliation import CsvImportError, decode_payload

log = logging.getLogger(__name__)

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=with_bom(text),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/registrations/{event_id}.csv", dependencies=[Depends(staff_required)])
def registrations_csv(event_id: int, session: Session = Depends(get_session)):
    ev = services.get_event(session, event_id)
    if not ev:
        raise HTTPException(status_code=404, detail="Event not found")
    text = services.export_event_registrations_csv(session, event_id)
    return _csv_response(f"registrations-{ev.slug}-{date.today().isoformat()}.csv", text)

@router.get("/orders.csv", dependencies=[Depends(admin_required)])
def orders_csv(session: Session = Depends(get_session)):
    return _csv_response(f"orders-{date.today().isoformat()}.csv", services.export_orders_csv(session))

@router.post("/registrations/import", dependencies=[Depends(admin_required)])
async def registrations_import(
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    locks: LockBackend = Depends(get_locks),
):
    try:
        text = decode_payload(await file.read())
        result = await services.import_registration_payments(session, locks, text)
    except CsvImportError as e:
        log.warning("Registration payment import rejected (%s): %s", file.filename, e)
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()

@router.post("/orders/import", dependencies=[Depends(admin_required)])
async def orders_import(
    file: UploadFile = File(...),
    session: Session = Depends(get_session),
    locks: LockBackend = Depends(get_locks),
):
    try:
        text = decode_payload(await file.read())
        result = await services.import_order_payments(session, locks, text)
    except CsvImportError as e:
        log.warning("Order payment import rejected (%s): %s", file.filename, e)
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()
