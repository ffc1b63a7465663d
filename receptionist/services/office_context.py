"""
Office context prefetch and local availability search.

Providers, operatories and the occupied appointment slots of the coming days
are fetched once per session. Availability is then computed locally as a set
difference over candidate start times instead of one remote call per time.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timedelta
from typing import Dict, Any, List, Optional, Sequence, Tuple

from receptionist.config.settings import settings

logger = logging.getLogger(__name__)

# Appointment patterns use one character per 5 minutes, X marks booked time
PATTERN_MINUTES_PER_CHAR = 5
INACTIVE_APPOINTMENT_STATUSES = {"Broken", "UnschedList", "Deleted"}
DATETIME_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M")


@dataclass
class OccupiedSlot:
    """A booked interval."""
    start: datetime
    end: datetime
    prov_num: Optional[int] = None
    op_num: Optional[int] = None
    apt_num: Optional[int] = None

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass
class OfficeContext:
    """Read-only office state handed to the supervisor."""
    providers: List[Dict[str, Any]] = field(default_factory=list)
    operatories: List[Dict[str, Any]] = field(default_factory=list)
    occupied_slots: List[OccupiedSlot] = field(default_factory=list)
    fetched_at: datetime = field(default_factory=datetime.now)
    errors: List[str] = field(default_factory=list)

    def to_prompt(self) -> str:
        """Render the context for the supervisor's instructions."""
        lines = [f"OFFICE CONTEXT (fetched {self.fetched_at:%Y-%m-%d %H:%M})"]

        lines.append("Providers:")
        for provider in self.providers:
            name = " ".join(filter(None, [provider.get("FName"), provider.get("LName")])) or provider.get("Abbr", "")
            lines.append(f"  - ProvNum {provider.get('ProvNum')}: {name}")
        if not self.providers:
            lines.append("  (none loaded)")

        lines.append("Operatories:")
        for operatory in self.operatories:
            lines.append(f"  - OpNum {operatory.get('OperatoryNum')}: {operatory.get('OpName', '')}")
        if not self.operatories:
            lines.append("  (none loaded)")

        lines.append("Occupied slots:")
        for slot in sorted(self.occupied_slots, key=lambda s: s.start):
            lines.append(
                f"  - {slot.start:%Y-%m-%d %H:%M}-{slot.end:%H:%M} ProvNum {slot.prov_num} Op {slot.op_num}"
            )
        if not self.occupied_slots:
            lines.append("  (none)")

        lines.append(
            "Use FindFirstAvailableSlot for availability; do not call GetAppointments once per candidate time."
        )
        return "\n".join(lines)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a backend datetime string."""
    if isinstance(value, datetime):
        return value
    if not value:
        return None
    for fmt in DATETIME_FORMATS:
        try:
            return datetime.strptime(str(value), fmt)
        except ValueError:
            continue
    return None


def parse_clock(value: str) -> dt_time:
    """Parse an HH:MM string."""
    hours, minutes = str(value).split(":")[:2]
    return dt_time(int(hours), int(minutes))


def appointment_duration_minutes(pattern: Optional[str], default: Optional[int] = None) -> int:
    """Duration of an appointment from its time pattern, 5 minutes per X."""
    if default is None:
        default = settings.default_appointment_minutes
    if not pattern:
        return default
    booked = str(pattern).upper().count("X")
    return booked * PATTERN_MINUTES_PER_CHAR if booked else default


def occupied_from_appointments(appointments: Sequence[Dict[str, Any]]) -> List[OccupiedSlot]:
    """Convert backend appointments into occupied intervals."""
    slots = []
    for appointment in appointments or []:
        if appointment.get("AptStatus") in INACTIVE_APPOINTMENT_STATUSES:
            continue
        start = parse_datetime(appointment.get("AptDateTime"))
        if start is None:
            continue
        minutes = appointment_duration_minutes(appointment.get("Pattern"))
        slots.append(OccupiedSlot(
            start=start,
            end=start + timedelta(minutes=minutes),
            prov_num=appointment.get("ProvNum"),
            op_num=appointment.get("Op"),
            apt_num=appointment.get("AptNum")
        ))
    return slots


def find_first_free_slot(
    occupied: Sequence[Any],
    day: date,
    opening: dt_time,
    closing: dt_time,
    granularity_minutes: int,
    duration_minutes: Optional[int] = None
) -> Optional[datetime]:
    """
    Return the first candidate start time that overlaps no occupied interval.

    Args:
        occupied: OccupiedSlot objects, (start, end) tuples, or bare start datetimes
            (bare starts last duration_minutes)
        day: Day to search
        opening: First candidate start
        closing: Appointments must end by this time
        granularity_minutes: Step between candidate starts
        duration_minutes: Length of the appointment to place

    Returns:
        The first free start time or None when the day is full
    """
    if granularity_minutes <= 0:
        raise ValueError("granularity_minutes must be positive")
    if duration_minutes is None:
        duration_minutes = settings.default_appointment_minutes
    length = timedelta(minutes=duration_minutes)

    intervals: List[Tuple[datetime, datetime]] = []
    for item in occupied:
        if isinstance(item, OccupiedSlot):
            intervals.append((item.start, item.end))
        elif isinstance(item, tuple):
            intervals.append((item[0], item[1]))
        else:
            intervals.append((item, item + length))

    candidate = datetime.combine(day, opening)
    day_end = datetime.combine(day, closing)
    step = timedelta(minutes=granularity_minutes)

    while candidate + length <= day_end:
        candidate_end = candidate + length
        if not any(candidate < end and candidate_end > start for start, end in intervals):
            return candidate
        candidate += step
    return None


def find_first_available_slot(context: Optional[OfficeContext], parameters: Dict[str, Any]) -> Dict[str, Any]:
    """
    Local catalog handler: first free slot on a date from the prefetched context.

    Parameters: date (YYYY-MM-DD), optional opening, closing,
    granularity_minutes, duration_minutes, ProvNum and OpNum.
    """
    if context is None:
        return {
            "error": True,
            "message": "Office context is not loaded; use GetAppointments for this date instead.",
            "action": "RETRY_WITH_REMOTE"
        }

    try:
        day = datetime.strptime(str(parameters["date"]), "%Y-%m-%d").date()
        opening = parse_clock(parameters.get("opening") or settings.office_opening_time)
        closing = parse_clock(parameters.get("closing") or settings.office_closing_time)
        granularity = int(parameters.get("granularity_minutes") or settings.slot_granularity_minutes)
        duration = int(parameters.get("duration_minutes") or settings.default_appointment_minutes)
    except (KeyError, ValueError) as e:
        return {"error": True, "message": f"Invalid slot search parameters: {e}", "action": "FIX_PARAMETERS"}

    prov_num = parameters.get("ProvNum")
    op_num = parameters.get("OpNum")

    occupied = [
        slot for slot in context.occupied_slots
        if slot.start.date() == day
        and (prov_num is None or slot.prov_num is None or str(slot.prov_num) == str(prov_num))
        and (op_num is None or slot.op_num is None or str(slot.op_num) == str(op_num))
    ]

    slot = find_first_free_slot(occupied, day, opening, closing, granularity, duration)
    if slot is None:
        return {
            "available": False,
            "date": day.isoformat(),
            "message": f"No free {duration}-minute slot on {day.isoformat()}."
        }
    return {
        "available": True,
        "date": day.isoformat(),
        "AptDateTime": slot.strftime("%Y-%m-%d %H:%M:%S"),
        "ProvNum": prov_num,
        "OpNum": op_num,
        "duration_minutes": duration,
    }


class OfficeContextService:
    """Fetches the office context through the booking client."""

    def __init__(self, client=None):
        self.client = client

    def _client(self):
        if self.client is None:
            from receptionist.services.booking_client import booking_client
            self.client = booking_client
        return self.client

    async def fetch(self, organization_id: uuid.UUID, session_id: Optional[str] = None) -> OfficeContext:
        """
        Fetch providers, operatories and upcoming appointments concurrently.

        A failing lookup leaves its part empty and is recorded in errors.
        """
        client = self._client()
        today = date.today()
        date_end = today + timedelta(days=settings.office_lookahead_days)

        providers, operatories, appointments = await asyncio.gather(
            client.invoke("GetProviders", {}, session_id, organization_id),
            client.invoke("GetOperatories", {}, session_id, organization_id),
            client.invoke(
                "GetAppointments",
                {"DateStart": today.isoformat(), "DateEnd": date_end.isoformat()},
                session_id,
                organization_id
            ),
        )

        context = OfficeContext()
        for name, result in (("GetProviders", providers), ("GetOperatories", operatories), ("GetAppointments", appointments)):
            if not result.success:
                context.errors.append(f"{name}: {result.error}")

        if providers.success and isinstance(providers.result, list):
            context.providers = [p for p in providers.result if not p.get("IsHidden")]
        if operatories.success and isinstance(operatories.result, list):
            context.operatories = [o for o in operatories.result if not o.get("IsHidden")]
        if appointments.success and isinstance(appointments.result, list):
            context.occupied_slots = occupied_from_appointments(appointments.result)

        logger.info(
            f"Office context for {organization_id}: {len(context.providers)} providers, "
            f"{len(context.operatories)} operatories, {len(context.occupied_slots)} occupied slots"
        )
        if context.errors:
            logger.warning(f"Office context incomplete for {organization_id}: {context.errors}")
        return context


# Global instance
office_context_service = OfficeContextService()
