"""Services reachable through the broker, and the grants each one needs."""

from dataclasses import dataclass


@dataclass(frozen=True)
class ServiceGrant:
    """A CLI-addressable service and the grant requested on its behalf.

    Several CLI services can share one broker service (drive, mail and cal
    all proxy to Microsoft Graph) while asking for different scopes.
    """
    name: str  # CLI name: notion, drive, mail, cal
    broker_service: str  # service id the broker knows: notion, msgraph
    scopes: tuple[str, ...]
    duration: str  # broker duration string, e.g. "30m", "1h"
    proxy_prefix: str  # path prefix of the proxy passthrough
    label: str  # human-readable name
    account: str  # whose account the broker links, for messages

    def request_body(self) -> dict:
        """Body for POST /api/auth-request."""
        return {
            "service": self.broker_service,
            "scopes": list(self.scopes),
            "duration": self.duration,
        }


NOTION = ServiceGrant(
    name="notion",
    broker_service="notion",
    scopes=("read", "write"),
    duration="1h",
    proxy_prefix="/api/proxy/notion",
    label="Notion",
    account="Notion",
)

DRIVE = ServiceGrant(
    name="drive",
    broker_service="msgraph",
    scopes=("Files.Read", "Files.ReadWrite.All"),
    duration="30m",
    proxy_prefix="/proxy/msgraph",
    label="OneDrive",
    account="Microsoft",
)

MAIL = ServiceGrant(
    name="mail",
    broker_service="msgraph",
    scopes=("Mail.Read", "Mail.Send", "People.Read"),
    duration="1h",
    proxy_prefix="/proxy/msgraph",
    label="Outlook mail",
    account="Microsoft",
)

CAL = ServiceGrant(
    name="cal",
    broker_service="msgraph",
    scopes=("Calendars.Read",),
    duration="1h",
    proxy_prefix="/proxy/msgraph",
    label="Calendar",
    account="Microsoft",
)

SERVICES: dict[str, ServiceGrant] = {s.name: s for s in (NOTION, DRIVE, MAIL, CAL)}


def get_service(name: str) -> ServiceGrant:
    """Look up a service by CLI name.

    Raises:
        KeyError: If the name is not a known service.
    """
    return SERVICES[name]


def broker_services() -> dict[str, list[ServiceGrant]]:
    """Group CLI services by the broker service that backs them."""
    grouped: dict[str, list[ServiceGrant]] = {}
    for service in SERVICES.values():
        grouped.setdefault(service.broker_service, []).append(service)
    return grouped


def account_label(service_name: str) -> str:
    service = SERVICES.get(service_name)
    if service:
        return service.account
    return service_name.capitalize() if service_name else "Service"
