"""
Booking function catalog.

Every function the supervisor may call is one CatalogEntry: its parameter
schema, the functions whose results it depends on, and whether it belongs to
the priority subset exposed by default. Adding a function is a table change.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Any, List, Optional, Tuple

from receptionist.services.office_context import find_first_available_slot


@dataclass(frozen=True)
class CatalogEntry:
    """One callable function of the supervisor's catalog."""
    name: str
    description: str
    category: str
    properties: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    required: Tuple[str, ...] = ()
    # At least one of these must be present
    required_any: Tuple[str, ...] = ()
    depends_on: Tuple[str, ...] = ()
    priority: bool = False
    # Local handlers run in-process against the office context
    handler: Optional[Callable[..., Dict[str, Any]]] = None

    @property
    def is_local(self) -> bool:
        return self.handler is not None

    def tool_definition(self) -> Dict[str, Any]:
        """OpenAI chat-completions tool definition."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.properties,
                    "required": list(self.required),
                },
            },
        }


def _p(type_: str, description: str) -> Dict[str, Any]:
    return {"type": type_, "description": description}


PAT_NUM = _p("integer", "Patient number")
PROV_NUM = _p("integer", "Provider number")
OP_NUM = _p("integer", "Operatory number")
APT_NUM = _p("integer", "Appointment number")
SCHEDULE_NUM = _p("integer", "Schedule number")
DATE = _p("string", "Date in YYYY-MM-DD format")
CLOCK = _p("string", "Time in HH:MM format")


CATALOG: List[CatalogEntry] = [
    # Patients
    CatalogEntry(
        "GetMultiplePatients",
        "Search patients by last name, first name, phone or patient number. Returns matching patients.",
        "patients",
        {
            "LName": _p("string", "Last name"),
            "FName": _p("string", "First name"),
            "Phone": _p("string", "Phone number, digits only"),
            "PatNum": PAT_NUM,
        },
        required_any=("LName", "FName", "Phone", "PatNum"),
        priority=True,
    ),
    CatalogEntry("GetPatient", "Get one patient by PatNum.", "patients", {"PatNum": PAT_NUM}, ("PatNum",), priority=True),
    CatalogEntry(
        "CreatePatient",
        "Register a new patient. Returns the created patient with its PatNum.",
        "patients",
        {
            "FName": _p("string", "First name"),
            "LName": _p("string", "Last name"),
            "Birthdate": DATE,
            "WirelessPhone": _p("string", "Mobile phone, digits only"),
            "Email": _p("string", "Email address"),
        },
        ("FName", "LName", "Birthdate", "WirelessPhone"),
        depends_on=("GetMultiplePatients",),
        priority=True,
    ),
    CatalogEntry("GetAllPatients", "List all patients.", "patients"),
    CatalogEntry(
        "UpdatePatient",
        "Update fields of an existing patient.",
        "patients",
        {
            "PatNum": PAT_NUM,
            "FName": _p("string", "First name"),
            "LName": _p("string", "Last name"),
            "Birthdate": DATE,
            "WirelessPhone": _p("string", "Mobile phone"),
            "Email": _p("string", "Email address"),
        },
        ("PatNum",),
        depends_on=("GetMultiplePatients",),
    ),
    CatalogEntry("DeletePatient", "Delete a patient record.", "patients", {"PatNum": PAT_NUM}, ("PatNum",),
                 depends_on=("GetMultiplePatients",)),

    # Providers
    CatalogEntry("GetProviders", "List active providers with ProvNum and name.", "providers", priority=True),
    CatalogEntry("GetProvider", "Get one provider by ProvNum.", "providers", {"ProvNum": PROV_NUM}, ("ProvNum",),
                 priority=True),
    CatalogEntry(
        "CreateProvider",
        "Create a provider.",
        "providers",
        {"FName": _p("string", "First name"), "LName": _p("string", "Last name"), "Abbr": _p("string", "Abbreviation")},
        ("LName", "Abbr"),
    ),
    CatalogEntry(
        "UpdateProvider",
        "Update a provider.",
        "providers",
        {"ProvNum": PROV_NUM, "FName": _p("string", "First name"), "LName": _p("string", "Last name"),
         "IsHidden": _p("boolean", "Hide the provider")},
        ("ProvNum",),
        depends_on=("GetProviders",),
    ),

    # Operatories
    CatalogEntry("GetOperatories", "List active operatories with OperatoryNum and OpName.", "operatories", priority=True),
    CatalogEntry("GetOperatory", "Get one operatory.", "operatories", {"OperatoryNum": OP_NUM}, ("OperatoryNum",)),
    CatalogEntry(
        "CreateOperatory",
        "Create an operatory.",
        "operatories",
        {"OpName": _p("string", "Operatory name"), "IsHygiene": _p("boolean", "Hygiene operatory")},
        ("OpName",),
    ),
    CatalogEntry(
        "UpdateOperatory",
        "Update an operatory.",
        "operatories",
        {"OperatoryNum": OP_NUM, "OpName": _p("string", "Operatory name"), "IsHidden": _p("boolean", "Hide it")},
        ("OperatoryNum",),
        depends_on=("GetOperatories",),
    ),

    # Appointments
    CatalogEntry(
        "GetAppointments",
        "List appointments in a date range, optionally filtered by patient, provider or operatory.",
        "appointments",
        {"DateStart": DATE, "DateEnd": DATE, "PatNum": PAT_NUM, "ProvNum": PROV_NUM, "Op": OP_NUM,
         "AptStatus": _p("string", "Scheduled, Complete, Broken or UnschedList")},
        ("DateStart", "DateEnd"),
        priority=True,
    ),
    CatalogEntry("GetAppointment", "Get one appointment by AptNum.", "appointments", {"AptNum": APT_NUM}, ("AptNum",)),
    CatalogEntry(
        "GetAvailableSlots",
        "Remote availability search for a provider and operatory. Prefer FindFirstAvailableSlot.",
        "appointments",
        {"dateStart": DATE, "dateEnd": DATE, "ProvNum": PROV_NUM, "OpNum": OP_NUM,
         "lengthMinutes": _p("integer", "Appointment length in minutes")},
        ("dateStart", "dateEnd"),
        depends_on=("GetProviders", "GetOperatories"),
        priority=True,
    ),
    CatalogEntry(
        "CreateAppointment",
        "Book an appointment. AptDateTime is YYYY-MM-DD HH:MM:SS.",
        "appointments",
        {"PatNum": PAT_NUM, "AptDateTime": _p("string", "YYYY-MM-DD HH:MM:SS"), "ProvNum": PROV_NUM, "Op": OP_NUM,
         "Note": _p("string", "Appointment note"), "duration": _p("integer", "Minutes, default 30")},
        ("PatNum", "AptDateTime", "ProvNum", "Op"),
        depends_on=("GetMultiplePatients", "FindFirstAvailableSlot"),
        priority=True,
    ),
    CatalogEntry(
        "UpdateAppointment",
        "Change an existing appointment. Only provide fields to change.",
        "appointments",
        {"AptNum": APT_NUM, "AptDateTime": _p("string", "YYYY-MM-DD HH:MM:SS"), "ProvNum": PROV_NUM, "Op": OP_NUM,
         "Note": _p("string", "Appointment note"), "AptStatus": _p("string", "New status")},
        ("AptNum",),
        depends_on=("GetAppointments",),
        priority=True,
    ),
    CatalogEntry(
        "BreakAppointment",
        "Cancel an appointment while keeping its record.",
        "appointments",
        {"AptNum": APT_NUM, "sendToUnscheduledList": _p("boolean", "Move to the unscheduled list")},
        ("AptNum",),
        depends_on=("GetAppointments",),
        priority=True,
    ),
    CatalogEntry("DeleteAppointment", "Permanently delete an appointment.", "appointments", {"AptNum": APT_NUM},
                 ("AptNum",), depends_on=("GetAppointments",), priority=True),

    # Schedules
    CatalogEntry(
        "GetSchedules",
        "List provider schedules in a date range.",
        "schedules",
        {"DateStart": DATE, "DateEnd": DATE, "ProvNum": PROV_NUM},
    ),
    CatalogEntry("GetSchedule", "Get one schedule entry.", "schedules", {"ScheduleNum": SCHEDULE_NUM}, ("ScheduleNum",)),
    CatalogEntry("GetProviderSchedules", "Get the schedules of one provider.", "schedules",
                 {"ProvNum": PROV_NUM, "DateStart": DATE, "DateEnd": DATE}, ("ProvNum",),
                 depends_on=("GetProviders",)),
    CatalogEntry(
        "CreateSchedule",
        "Create a schedule block for a provider in an operatory.",
        "schedules",
        {"ProvNum": PROV_NUM, "OpNum": OP_NUM, "ScheduleDate": DATE, "StartTime": CLOCK, "EndTime": CLOCK},
        ("ProvNum", "OpNum", "ScheduleDate", "StartTime", "EndTime"),
        depends_on=("GetProviders", "GetOperatories", "CheckScheduleConflicts"),
    ),
    CatalogEntry(
        "UpdateSchedule",
        "Update a schedule block.",
        "schedules",
        {"ScheduleNum": SCHEDULE_NUM, "StartTime": CLOCK, "EndTime": CLOCK},
        ("ScheduleNum",),
        depends_on=("GetSchedules",),
    ),
    CatalogEntry("DeleteSchedule", "Delete a schedule block.", "schedules", {"ScheduleNum": SCHEDULE_NUM},
                 ("ScheduleNum",), depends_on=("GetSchedules",)),
    CatalogEntry(
        "CreateDefaultSchedules",
        "Create the default weekly schedule for a provider.",
        "schedules",
        {"ProvNum": PROV_NUM, "DateStart": DATE, "DateEnd": DATE},
        ("ProvNum",),
        depends_on=("GetProviders",),
    ),
    CatalogEntry(
        "CheckScheduleConflicts",
        "Check whether a schedule block would overlap an existing one.",
        "schedules",
        {"ProvNum": PROV_NUM, "OpNum": OP_NUM, "ScheduleDate": DATE, "StartTime": CLOCK, "EndTime": CLOCK},
        ("ProvNum", "ScheduleDate", "StartTime", "EndTime"),
    ),

    # Local
    CatalogEntry(
        "FindFirstAvailableSlot",
        "Find the first free appointment time on a date from the prefetched office context. "
        "No remote call; use this instead of checking times one by one.",
        "local",
        {"date": DATE, "opening": CLOCK, "closing": CLOCK,
         "granularity_minutes": _p("integer", "Minutes between candidate times"),
         "duration_minutes": _p("integer", "Appointment length in minutes"),
         "ProvNum": PROV_NUM, "OpNum": OP_NUM},
        ("date",),
        priority=True,
        handler=find_first_available_slot,
    ),
]

CATALOG_BY_NAME: Dict[str, CatalogEntry] = {entry.name: entry for entry in CATALOG}


def get_entry(name: str) -> Optional[CatalogEntry]:
    """Look up a catalog entry by function name."""
    return CATALOG_BY_NAME.get(name)


def catalog_entries(full: bool = False) -> List[CatalogEntry]:
    """The priority subset, or every entry when full is set."""
    if full:
        return list(CATALOG)
    return [entry for entry in CATALOG if entry.priority]


def remote_entries(full: bool = False) -> List[CatalogEntry]:
    return [entry for entry in catalog_entries(full) if not entry.is_local]


def tool_definitions(full: bool = False) -> List[Dict[str, Any]]:
    """Tool definitions for the supervisor model."""
    return [entry.tool_definition() for entry in catalog_entries(full)]


def render_catalog(full: bool = False) -> str:
    """Numbered catalog listing for the supervisor's instructions."""
    lines = []
    for index, entry in enumerate(catalog_entries(full), start=1):
        params = ", ".join(
            name if name in entry.required else f"{name}?"
            for name in entry.properties
        )
        lines.append(f"{index:>3}. {entry.name}({params}) - {entry.description}")
    return "\n".join(lines)


def render_dependency_rules(full: bool = False) -> str:
    """Dependency annotations rendered as ordering rules."""
    exposed = {entry.name for entry in catalog_entries(full)}
    lines = []
    for entry in catalog_entries(full):
        prerequisites = [name for name in entry.depends_on if name in exposed]
        if prerequisites:
            lines.append(f"- Call {' or '.join(prerequisites)} before {entry.name}.")
    return "\n".join(lines)


def validate_parameters(name: str, parameters: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Check required parameters of a call.

    Returns:
        None when valid, otherwise a structured validation error the model can act on
    """
    entry = get_entry(name)
    if entry is None:
        return {
            "error": True,
            "validationError": True,
            "functionName": name,
            "message": f"Unknown function {name}.",
            "missingFields": [],
            "action": "USE_CATALOG_FUNCTION",
        }

    missing = [
        field_name for field_name in entry.required
        if parameters.get(field_name) in (None, "")
    ]
    if entry.required_any and not any(parameters.get(f) not in (None, "") for f in entry.required_any):
        missing.append(" or ".join(entry.required_any))

    if not missing:
        return None
    return {
        "error": True,
        "validationError": True,
        "functionName": name,
        "message": f"{name} is missing required information: {', '.join(missing)}. Ask the caller for it.",
        "missingFields": missing,
        "action": "ASK_USER",
    }
