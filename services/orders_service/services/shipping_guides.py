"""Shipping guide orchestration: quote, select rate, create guide, tracking.

``create_guide`` is idempotent per order: once a carrier order id is stored
it short-circuits with ``AlreadyCreated`` (carrying the existing guide URL)
instead of creating a second shipment. A failed carrier call leaves the
shipment fields untouched and only records the error and attempt count.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from libs.common.config import Settings, get_settings
from libs.common.datetime_utils import next_business_day, utc_now
from libs.common.logging import get_logger
from services.orders_service.carrier_client import CarrierClient, CarrierRate
from services.orders_service.errors import (
    AlreadyCreated,
    NotPaid,
    NotQuoted,
    OrderNotFound,
    PipelineError,
)
from services.orders_service.models import (
    Box,
    Order,
    OrderStatus,
    Shipping,
    ShippingStatus,
    ShippingTrackingEvent,
)
from services.orders_service.services.order_state import (
    OrderPolicy,
    SideEffect,
    TransitionResult,
    ensure_shipping,
    get_order,
    transition_order,
)
from services.orders_service.services.packaging import (
    CartLine,
    PackageDimensions,
    box_overrides,
    calculate_package,
    with_manual_box,
)
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

# Carrier field length limits
FIELD_LIMITS = {
    "company": 28,
    "firstName": 14,
    "lastName": 14,
    "email": 68,
    "phone": 10,
    "address": 50,
    "suburb": 38,
    "crossStreet": 35,
    "reference": 25,
    "daneCode": 8,
}
DESCRIPTION_MAX = 25
PLACEHOLDER = "NA"

# Carrier tracking status (text or legacy numeric code) -> shipping status
CARRIER_STATUS_MAP: dict[str, ShippingStatus] = {
    "entregado": ShippingStatus.DELIVERED,
    "en tránsito": ShippingStatus.IN_TRANSIT,
    "en transito": ShippingStatus.IN_TRANSIT,
    "pendiente de recolección": ShippingStatus.PREPARING,
    "pendiente de recoleccion": ShippingStatus.PREPARING,
    "envío recolectado": ShippingStatus.PICKED_UP,
    "envio recolectado": ShippingStatus.PICKED_UP,
    "devuelto": ShippingStatus.RETURNED,
    "cancelado": ShippingStatus.CANCELLED,
    "excepción": ShippingStatus.EXCEPTION,
    "excepcion": ShippingStatus.EXCEPTION,
    "en reparto": ShippingStatus.OUT_FOR_DELIVERY,
    "intento de entrega fallido": ShippingStatus.FAILED_DELIVERY,
    "01": ShippingStatus.SHIPPED,
    "02": ShippingStatus.PICKED_UP,
    "03": ShippingStatus.IN_TRANSIT,
    "04": ShippingStatus.OUT_FOR_DELIVERY,
    "05": ShippingStatus.DELIVERED,
    "06": ShippingStatus.FAILED_DELIVERY,
    "07": ShippingStatus.RETURNED,
    "08": ShippingStatus.CANCELLED,
    "09": ShippingStatus.EXCEPTION,
}

# Statuses that mean the parcel has left the store
DISPATCHED_STATUSES = frozenset(
    {
        ShippingStatus.SHIPPED,
        ShippingStatus.PICKED_UP,
        ShippingStatus.IN_TRANSIT,
        ShippingStatus.OUT_FOR_DELIVERY,
        ShippingStatus.DELIVERED,
    }
)


# ---------------------------------------------------------------------------
# Address helpers
# ---------------------------------------------------------------------------


def split_full_name(full_name: Optional[str]) -> tuple[str, str]:
    """First token is the first name, the rest the last name (14 chars each)."""
    parts = (full_name or "").split()
    if not parts:
        return PLACEHOLDER, PLACEHOLDER
    first = parts[0][: FIELD_LIMITS["firstName"]]
    last = " ".join(parts[1:])[: FIELD_LIMITS["lastName"]].strip()
    return first, last or PLACEHOLDER


def clean_phone_number(phone: Optional[str]) -> str:
    """Keep digits only and drop a leading 57 country code from 12-digit numbers."""
    digits = re.sub(r"\D", "", phone or "")
    if len(digits) == 12 and digits.startswith("57"):
        digits = digits[2:]
    return digits[: FIELD_LIMITS["phone"]]


def _fit(value: Optional[str], key: str, default: str = PLACEHOLDER) -> str:
    value = (value or "").strip()
    if not value:
        return default
    return value[: FIELD_LIMITS[key]]


def _address_block(
    *,
    company: Optional[str],
    full_name: str,
    email: Optional[str],
    phone: str,
    address: str,
    suburb: Optional[str],
    cross_street: Optional[str],
    reference: Optional[str],
    locality_code: Optional[str],
) -> dict[str, str]:
    first_name, last_name = split_full_name(full_name)
    return {
        "company": _fit(company, "company"),
        "firstName": first_name,
        "lastName": last_name,
        "email": _fit(email, "email", default=""),
        "phone": clean_phone_number(phone),
        "address": _fit(address, "address"),
        "suburb": _fit(suburb, "suburb"),
        "crossStreet": _fit(cross_street, "crossStreet"),
        "reference": _fit(reference, "reference"),
        "daneCode": re.sub(r"\D", "", locality_code or "")[: FIELD_LIMITS["daneCode"]],
    }


def build_origin(settings: Settings) -> dict[str, str]:
    return _address_block(
        company=settings.STORE_COMPANY,
        full_name=settings.STORE_CONTACT_NAME,
        email=settings.STORE_EMAIL,
        phone=settings.STORE_PHONE,
        address=settings.STORE_ADDRESS,
        suburb=settings.STORE_SUBURB,
        cross_street=settings.STORE_CROSS_STREET,
        reference=settings.STORE_REFERENCE,
        locality_code=settings.STORE_LOCALITY_CODE,
    )


def build_destination(order: Order) -> dict[str, str]:
    return _address_block(
        company=order.company,
        full_name=order.full_name,
        email=order.email,
        phone=order.phone,
        address=order.address,
        suburb=order.neighborhood,
        cross_street=order.address2,
        reference=order.address_reference,
        locality_code=order.locality_code,
    )


# ---------------------------------------------------------------------------
# Package resolution
# ---------------------------------------------------------------------------


async def resolve_package(
    db: AsyncSession, order: Order, shipping: Optional[Shipping] = None
) -> PackageDimensions:
    """Package for an order: manual box override, or the calculator."""
    boxes = (await db.execute(select(Box))).scalars().all()
    lines = [CartLine(item.product_id, item.quantity) for item in order.items]
    sizes = {
        item.product_id: item.product.size_value
        for item in order.items
        if item.product_id and item.product is not None
    }
    package = calculate_package(lines, sizes, box_overrides(boxes))

    if shipping and shipping.box_id:
        manual = next((box for box in boxes if box.id == shipping.box_id), None)
        if manual:
            return with_manual_box(package, manual)
        logger.warning(
            "Manual box %s for order #%d no longer exists, using calculated package",
            shipping.box_id,
            order.order_number,
        )
    return package


def _description(settings: Settings) -> str:
    return (settings.CARRIER_DESCRIPTION or "Mercancia")[:DESCRIPTION_MAX]


# ---------------------------------------------------------------------------
# Quote and rate selection
# ---------------------------------------------------------------------------


async def quote_shipping(
    db: AsyncSession,
    order_id: uuid.UUID,
    carrier: CarrierClient,
    settings: Optional[Settings] = None,
) -> list[CarrierRate]:
    settings = settings or get_settings()
    order = await get_order(db, order_id)
    package = await resolve_package(db, order, order.shipping)
    origin = build_origin(settings)
    destination = build_destination(order)
    payload = {
        "packages": [package.carrier_package()],
        "description": _description(settings),
        "contentValue": float(order.total),
        "origin": {"daneCode": origin["daneCode"], "address": origin["address"]},
        "destination": {
            "daneCode": destination["daneCode"],
            "address": destination["address"],
        },
    }
    return await carrier.quote_shipment(payload)


async def select_rate(
    db: AsyncSession,
    order_id: uuid.UUID,
    *,
    rate_id: int,
    carrier_name: Optional[str] = None,
    cost: Optional[Decimal] = None,
    box_id: Optional[uuid.UUID] = None,
) -> Shipping:
    """Store the chosen carrier rate (and optional manual box) on the shipment."""
    order = await get_order(db, order_id)
    shipping = await ensure_shipping(db, order)
    if shipping.guide_created:
        raise AlreadyCreated(shipping.guide_url)

    shipping.carrier_rate_id = rate_id
    shipping.carrier_name = carrier_name
    if box_id is not None:
        shipping.box_id = box_id
    # The financial snapshot keeps the cost known at payment time
    if cost is not None and (shipping.cost is None or not order.has_financial_snapshot):
        shipping.cost = cost
    shipping.package_dimensions = (await resolve_package(db, order, shipping)).as_dict()
    await db.commit()
    await db.refresh(shipping)

    logger.info(
        "Selected rate %s (%s) for order #%d", rate_id, carrier_name, order.order_number
    )
    return shipping


# ---------------------------------------------------------------------------
# Guide creation
# ---------------------------------------------------------------------------


async def _lock_shipping(db: AsyncSession, order_id: uuid.UUID) -> Optional[Shipping]:
    result = await db.execute(
        select(Shipping)
        .where(Shipping.order_id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def build_shipment_payload(
    order: Order,
    shipping: Shipping,
    package: PackageDimensions,
    settings: Settings,
) -> dict[str, Any]:
    return {
        "idRate": shipping.carrier_rate_id,
        "myShipmentReference": str(order.order_number),
        "external_order_id": str(order.id),
        "requestPickup": settings.CARRIER_REQUEST_PICKUP,
        "pickupDate": next_business_day(settings.TIMEZONE).isoformat(),
        "insurance": settings.CARRIER_INSURANCE,
        "description": _description(settings),
        "contentValue": float(order.total),
        "packages": [package.carrier_package()],
        "origin": build_origin(settings),
        "destination": build_destination(order),
    }


async def record_guide_failure(
    db: AsyncSession, order_id: uuid.UUID, exc: PipelineError
) -> None:
    """Store the failure on the shipment in its own transaction."""
    shipping = await _lock_shipping(db, order_id)
    if shipping is None:
        return
    shipping.guide_attempts = (shipping.guide_attempts or 0) + 1
    shipping.guide_error = f"{exc.code}: {exc.message}"
    await db.commit()


async def create_guide(
    db: AsyncSession,
    order_id: uuid.UUID,
    carrier: CarrierClient,
    settings: Optional[Settings] = None,
) -> Shipping:
    """Create the carrier shipment for a paid, quoted order."""
    settings = settings or get_settings()
    try:
        order = await get_order(db, order_id)
        if order.status != OrderStatus.PAID:
            raise NotPaid(
                "Guides can only be created for paid orders",
                details={"order_id": str(order_id), "status": order.status.value},
            )

        shipping = await _lock_shipping(db, order_id)
        if shipping is None or not shipping.carrier_rate_id:
            raise NotQuoted(
                "Shipping has not been quoted for this order",
                details={"order_id": str(order_id)},
            )
        if shipping.guide_created:
            raise AlreadyCreated(
                shipping.guide_url, details={"order_id": str(order_id)}
            )

        package = await resolve_package(db, order, shipping)
        payload = build_shipment_payload(order, shipping, package, settings)
        result = await carrier.create_shipment(payload)
    except (AlreadyCreated, NotPaid, NotQuoted, OrderNotFound):
        await db.rollback()
        raise
    except PipelineError as exc:
        await db.rollback()
        logger.error(
            "Guide creation failed for order %s: %s",
            order_id,
            exc.message,
            extra={"extra_fields": {"order_id": str(order_id), "error": exc.code}},
        )
        await record_guide_failure(db, order_id, exc)
        raise

    shipping.carrier_order_id = result.carrier_order_id
    shipping.external_order_id = result.external_order_id or str(order.id)
    shipping.tracking_code = result.tracking_code
    shipping.guide_url = result.guide_url
    shipping.guide_document = result.guide_document
    shipping.request_pickup = result.request_pickup
    shipping.origin_data = result.origin or payload["origin"]
    shipping.destination_data = result.destination or payload["destination"]
    shipping.pickup_date = datetime.strptime(payload["pickupDate"], "%Y-%m-%d").date()
    shipping.package_dimensions = package.as_dict()
    shipping.status = ShippingStatus.PREPARING
    shipping.guide_error = None
    await db.commit()
    await db.refresh(shipping)

    logger.info(
        "Created guide %s for order #%d (carrier order %s)",
        shipping.tracking_code,
        order.order_number,
        shipping.carrier_order_id,
    )
    return shipping


async def retry_pending_guides(
    db: AsyncSession,
    carrier: CarrierClient,
    settings: Optional[Settings] = None,
) -> dict[str, int]:
    """Retry guide creation for paid, quoted orders without a guide."""
    settings = settings or get_settings()
    result = await db.execute(
        select(Shipping.order_id)
        .join(Order, Order.id == Shipping.order_id)
        .where(
            Order.status == OrderStatus.PAID,
            Shipping.carrier_rate_id.is_not(None),
            Shipping.carrier_order_id.is_(None),
            Shipping.guide_attempts < settings.SHIPPING_RETRY_MAX_ATTEMPTS,
        )
        .order_by(Order.order_number)
    )
    order_ids = list(result.scalars().all())

    created = failed = 0
    for order_id in order_ids:
        try:
            await create_guide(db, order_id, carrier, settings)
            created += 1
        except AlreadyCreated:
            continue
        except PipelineError as exc:
            failed += 1
            logger.warning("Guide retry failed for order %s: %s", order_id, exc.message)

    if order_ids:
        logger.info("Guide retry: %d created, %d failed", created, failed)
    return {"pending": len(order_ids), "created": created, "failed": failed}


# ---------------------------------------------------------------------------
# Carrier tracking updates
# ---------------------------------------------------------------------------


def map_carrier_status(raw: Optional[str]) -> Optional[ShippingStatus]:
    if not raw:
        return None
    return CARRIER_STATUS_MAP.get(str(raw).strip().lower())


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _checkpoint_time(value: datetime) -> datetime:
    """Naive UTC, so stored and incoming checkpoints compare on any backend."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def latest_carrier_status(payload: dict[str, Any]) -> Optional[ShippingStatus]:
    """Status of the newest event, falling back to the top-level status fields."""
    events = payload.get("events") or []
    if events:
        latest = events[0]
        status = map_carrier_status(latest.get("statusStep")) or map_carrier_status(
            latest.get("status")
        )
        if status:
            return status
    return map_carrier_status(payload.get("status") or payload.get("statusCode"))


def describe_tracking_event(event: dict[str, Any]) -> Optional[str]:
    description = event.get("description") or event.get("statusDetail") or ""
    incidence = event.get("incidence")
    if incidence:
        incidence_type = event.get("incidenceType")
        description += f" [INCIDENCIA: {incidence_type}]" if incidence_type else " [INCIDENCIA]"
    if event.get("receivedBy"):
        description += f" (Recibido por: {event['receivedBy']})"
    return description.strip() or None


async def record_tracking_events(
    db: AsyncSession, shipping: Shipping, events: list[dict[str, Any]]
) -> int:
    """Add the checkpoints not stored yet. Returns how many were added."""
    existing = await db.execute(
        select(ShippingTrackingEvent.occurred_at, ShippingTrackingEvent.status).where(
            ShippingTrackingEvent.shipping_id == shipping.id
        )
    )
    seen = {(_checkpoint_time(occurred_at), status) for occurred_at, status in existing}

    added = 0
    for event in events:
        step = event.get("statusStep") or event.get("status")
        occurred_at = _parse_datetime(event.get("timestamp"))
        if not step or occurred_at is None:
            logger.warning(
                "Skipping tracking event without step or timestamp",
                extra={"extra_fields": {"shipping_id": str(shipping.id), "event": event}},
            )
            continue
        key = (_checkpoint_time(occurred_at), step)
        if key in seen:
            continue
        seen.add(key)
        if occurred_at.tzinfo is not None:
            occurred_at = occurred_at.astimezone(timezone.utc)
        db.add(
            ShippingTrackingEvent(
                shipping_id=shipping.id,
                status=step,
                description=describe_tracking_event(event),
                location=event.get("location"),
                occurred_at=occurred_at,
            )
        )
        added += 1
    return added


@dataclass
class TrackingUpdate:
    shipping: Shipping
    order_id: uuid.UUID
    order_number: int
    previous_status: ShippingStatus
    status: Optional[ShippingStatus]
    events_recorded: int = 0
    transition: Optional[TransitionResult] = None

    @property
    def status_changed(self) -> bool:
        return self.status is not None and self.status != self.previous_status

    @property
    def side_effects(self) -> list[SideEffect]:
        """Shipping notice for a status change, unless the order transition sends one."""
        if not self.status_changed:
            return []
        if self.transition and SideEffect.NOTIFY_CUSTOMER in self.transition.side_effects:
            return []
        return [SideEffect.NOTIFY_SHIPPING]


async def apply_tracking_update(
    db: AsyncSession,
    payload: dict[str, Any],
    *,
    policy: Optional[OrderPolicy] = None,
) -> Optional[TrackingUpdate]:
    """Apply a carrier tracking notification. Returns None for unknown shipments.

    The newest event decides the shipping status; every event is kept as a
    tracking checkpoint. The first dispatched status (picked up, in transit,
    ...) moves a PAID order to SENT.
    """
    carrier_order_id = str(payload.get("idOrder") or "")
    reference = str(payload.get("myShipmentReference") or "")

    query = select(Shipping, Order.order_number).join(Order, Order.id == Shipping.order_id)
    if carrier_order_id.isdigit():
        query = query.where(Shipping.carrier_order_id == int(carrier_order_id))
    elif reference.isdigit():
        query = query.where(Order.order_number == int(reference))
    else:
        return None
    row = (
        await db.execute(query.with_for_update().execution_options(populate_existing=True))
    ).one_or_none()
    if row is None:
        logger.warning(
            "Tracking update for unknown shipment",
            extra={"extra_fields": {"idOrder": carrier_order_id, "reference": reference}},
        )
        return None
    shipping, order_number = row

    events = payload.get("events") or []
    status = latest_carrier_status(payload)
    update = TrackingUpdate(
        shipping=shipping,
        order_id=shipping.order_id,
        order_number=order_number,
        previous_status=shipping.status,
        status=status,
    )
    if status:
        shipping.status = status
    if payload.get("trackingCode"):
        shipping.tracking_code = str(payload["trackingCode"])
    picked_up = _parse_datetime(payload.get("realPickupDate"))
    if picked_up:
        shipping.picked_up_at = picked_up
    arrival = _parse_datetime(payload.get("arrivalDate"))
    if arrival:
        shipping.estimated_delivery_at = arrival
    delivered = _parse_datetime(payload.get("realDeliveryDate"))
    if delivered:
        shipping.delivered_at = delivered
    elif status == ShippingStatus.DELIVERED and shipping.delivered_at is None:
        shipping.delivered_at = utc_now()
    if events and events[0].get("receivedBy"):
        shipping.received_by = str(events[0]["receivedBy"])

    update.events_recorded = await record_tracking_events(db, shipping, events)
    await db.commit()

    if update.status_changed:
        logger.info(
            "Shipping for order #%d moved %s -> %s",
            order_number,
            update.previous_status.value,
            status.value,
        )

    order_status = await db.scalar(select(Order.status).where(Order.id == shipping.order_id))
    if status in DISPATCHED_STATUSES and order_status == OrderStatus.PAID:
        update.transition = await transition_order(
            db,
            shipping.order_id,
            OrderStatus.SENT,
            actor="webhook:carrier",
            policy=policy,
        )
    return update


async def list_tracking_events(
    db: AsyncSession, order_id: uuid.UUID
) -> list[ShippingTrackingEvent]:
    """Tracking checkpoints of an order's shipment, newest first."""
    order = await get_order(db, order_id)
    if order.shipping is None:
        return []
    result = await db.execute(
        select(ShippingTrackingEvent)
        .where(ShippingTrackingEvent.shipping_id == order.shipping.id)
        .order_by(ShippingTrackingEvent.occurred_at.desc())
    )
    return list(result.scalars().all())
