import logging
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, Depends, Form, HTTPException
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from fastapi.templating import Jinja2Templates

from .settings import settings
from .db import init_db, get_session, session_factory
from . import models, services
from .auth import (
    CurrentUser,
    LoginCookieMiddleware,
    get_current_user,
    login_required,
    staff_required,
    admin_required,
    set_login_cookie,
    clear_login_cookie,
)
from .csv_io import format_cell
from .documents import invoice_context, render_invoice_pdf, render_registration_receipt_pdf
from .locks import LockBackend, LockTimeoutError, build_lock_backend, get_locks
from .schemas import DistanceCreate, EventCreate, OrderCreate, ProductCreate, RegistrationCreate

log = logging.getLogger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    app.state.locks = build_lock_backend(settings)
    s = session_factory()()
    try:
        services.ensure_admin_user(s)
    finally:
        s.close()
    yield

app = FastAPI(title="Race Registration", lifespan=lifespan)
app.add_middleware(LoginCookieMiddleware)

@app.exception_handler(LockTimeoutError)
def _lock_timeout(request: Request, exc: LockTimeoutError):
    log.warning("Lock timeout on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": "Server busy, try again"}, status_code=503)

def _http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, (services.CapacityError, services.OutOfStockError)):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))

# ---------------------------
# JSON shapes
# ---------------------------

def _event_json(ev) -> dict:
    return {
        "id": ev.id,
        "slug": ev.slug,
        "title": ev.title,
        "location": ev.location,
        "event_date": format_cell(ev.event_date),
    }

def _distance_json(view: services.DistanceView) -> dict:
    return {
        "id": view.id,
        "name": view.name,
        "base_price": format_cell(view.base_price),
        "price": format_cell(view.effective_price),
        "tier_name": view.tier_name,
        "capacity_limit": view.capacity_limit,
        "registered": view.registered,
        "remaining": view.remaining,
    }

def _registration_json(reg) -> dict:
    return {
        "registration_number": reg.registration_number,
        "distance_id": reg.distance_id,
        "final_price": format_cell(reg.final_price),
        "tier_name": reg.tier_name,
        "registration_status": reg.registration_status,
        "payment_status": reg.payment_status,
        "created_at": format_cell(reg.created_at),
    }

def _order_json(order) -> dict:
    return {
        "order_number": order.order_number,
        "total_amount": format_cell(order.total_amount),
        "status": order.status,
        "payment_method": order.payment_method,
        "created_at": format_cell(order.created_at),
    }

def _product_json(p) -> dict:
    return {"id": p.id, "slug": p.slug, "name": p.name, "price": format_cell(p.price), "stock": p.stock}

# ---------------------------
# Auth
# ---------------------------

@app.post("/login")
def login_submit(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    session=Depends(get_session),
):
    u = services.authenticate_user(session, email=email.strip(), password=password)
    if not u:
        raise HTTPException(status_code=401, detail="Invalid email or password.")
    set_login_cookie(request, CurrentUser(id=u.id, email=u.email, role=u.role))
    return {"ok": True, "role": u.role}

@app.post("/logout")
def logout(request: Request):
    clear_login_cookie(request)
    return RedirectResponse(url="/events", status_code=302)

# ---------------------------
# Public
# ---------------------------

@app.get("/events")
def events_list(session=Depends(get_session)):
    return [_event_json(ev) for ev in services.list_published_events(session)]

@app.get("/events/{slug}")
def event_detail(slug: str, session=Depends(get_session)):
    ev = services.get_event_by_slug(session, slug)
    if not ev or not ev.is_published:
        raise HTTPException(status_code=404, detail="Event not found")
    out = _event_json(ev)
    out["description"] = ev.description
    out["distances"] = [_distance_json(v) for v in services.distance_views(session, ev)]
    return out

@app.post("/events/{slug}/register", status_code=201)
async def register_submit(
    slug: str,
    payload: RegistrationCreate,
    user=Depends(login_required),
    session=Depends(get_session),
    locks: LockBackend = Depends(get_locks),
):
    ev = services.get_event_by_slug(session, slug)
    if not ev or not ev.is_published:
        raise HTTPException(status_code=404, detail="Event not found")
    if payload.distance_id not in {d.id for d in ev.distances}:
        raise HTTPException(status_code=404, detail="Distance not found")
    try:
        reg = await services.register_for_distance(session, locks, user_id=user.id, distance_id=payload.distance_id)
    except ValueError as e:
        raise _http_error(e)
    return _registration_json(reg)

@app.get("/shop/products")
def products_list(session=Depends(get_session)):
    return [_product_json(p) for p in services.list_active_products(session)]

@app.post("/shop/orders", status_code=201)
async def order_submit(
    payload: OrderCreate,
    user=Depends(get_current_user),
    session=Depends(get_session),
    locks: LockBackend = Depends(get_locks),
):
    try:
        order = await services.create_order(session, locks, payload, user_id=user.id if user else None)
    except ValueError as e:
        raise _http_error(e)
    return _order_json(order)

# ---------------------------
# Dashboard
# ---------------------------

@app.get("/dashboard/registrations")
def my_registrations(user=Depends(login_required), session=Depends(get_session)):
    out = []
    for reg in services.list_user_registrations(session, user.id):
        row = _registration_json(reg)
        row["event"] = reg.distance.event.title
        row["distance"] = reg.distance.name
        out.append(row)
    return out

@app.get("/dashboard/registrations/{registration_number}/receipt.pdf")
def my_registration_receipt(registration_number: str, user=Depends(login_required), session=Depends(get_session)):
    reg = next(
        (r for r in services.list_user_registrations(session, user.id) if r.registration_number == registration_number),
        None,
    )
    if not reg:
        raise HTTPException(status_code=404, detail="Registration not found")
    return Response(
        content=render_registration_receipt_pdf(reg),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{registration_number}.pdf"'},
    )

@app.get("/dashboard/orders")
def my_orders(user=Depends(login_required), session=Depends(get_session)):
    return [_order_json(o) for o in services.list_user_orders(session, user.id)]

def _own_order(session, order_number: str, user):
    order = services.get_order_by_number(session, order_number)
    if not order or (order.user_id != user.id and not user.is_staff):
        raise HTTPException(status_code=404, detail="Order not found")
    return order

@app.get("/dashboard/orders/{order_number}/invoice", response_class=HTMLResponse)
def my_order_invoice(order_number: str, request: Request, user=Depends(login_required), session=Depends(get_session)):
    order = _own_order(session, order_number, user)
    return templates.TemplateResponse(request, "invoice.html", invoice_context(order))

@app.get("/dashboard/orders/{order_number}/invoice.pdf")
def my_order_invoice_pdf(order_number: str, user=Depends(login_required), session=Depends(get_session)):
    order = _own_order(session, order_number, user)
    return Response(
        content=render_invoice_pdf(order),
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="invoice_{order_number}.pdf"'},
    )

# ---------------------------
# Admin
# ---------------------------

@app.post("/admin/events", status_code=201, dependencies=[Depends(admin_required)])
def event_create(payload: EventCreate, session=Depends(get_session)):
    try:
        ev = services.create_event(session, payload)
    except ValueError as e:
        raise _http_error(e)
    return _event_json(ev)

@app.post("/admin/events/{event_id}/distances", status_code=201, dependencies=[Depends(admin_required)])
def distance_create(event_id: int, payload: DistanceCreate, session=Depends(get_session)):
    try:
        d = services.create_distance(session, event_id, payload)
    except ValueError as e:
        raise _http_error(e)
    return {"id": d.id, "name": d.name, "tiers": len(d.price_tiers)}

@app.put("/admin/distances/{distance_id}", dependencies=[Depends(admin_required)])
def distance_update(distance_id: int, payload: DistanceCreate, session=Depends(get_session)):
    try:
        d = services.update_distance(session, distance_id, payload)
    except ValueError as e:
        raise _http_error(e)
    return {"id": d.id, "name": d.name, "tiers": len(d.price_tiers)}

@app.delete("/admin/distances/{distance_id}", dependencies=[Depends(admin_required)])
def distance_delete(distance_id: int, session=Depends(get_session)):
    if not session.get(models.Distance, distance_id):
        raise HTTPException(status_code=404, detail="Distance not found")
    try:
        services.delete_distance(session, distance_id)
    except ValueError as e:
        raise _http_error(e)
    return {"ok": True}

@app.post("/admin/products", status_code=201, dependencies=[Depends(admin_required)])
def product_create(payload: ProductCreate, session=Depends(get_session)):
    try:
        p = services.create_product(session, payload)
    except ValueError as e:
        raise _http_error(e)
    return _product_json(p)

@app.get("/admin/events/{event_id}/registrations", dependencies=[Depends(staff_required)])
def event_registrations(event_id: int, session=Depends(get_session)):
    if not services.get_event(session, event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    out = []
    for reg in services.list_event_registrations(session, event_id):
        row = _registration_json(reg)
        row["name"] = reg.user.full_name
        row["email"] = reg.user.email
        out.append(row)
    return out

from .csv_transfer import router as csv_router
app.include_router(csv_router, prefix="/admin/csv", tags=["csv"])
