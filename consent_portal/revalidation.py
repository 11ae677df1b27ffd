# consent_portal/revalidation.py
from typing import Iterable, List, Optional

from consent_portal.app_logger import get_logger

log = get_logger("revalidation")

PROFILE_CONSENTS = "/profile/consents"
OPS_CONSENTS = "/ops/consents"
OPS_CONSENT_RECORD = "/ops/consents/record"
ADMIN_CONSENTS = "/app-admin/consents"
OPS_CLIENTS = "/ops/clients"

REVALIDATE_HEADER = "X-Revalidate-Paths"


def client_profile(person_id: int) -> str:
    return f"/clients/{person_id}"


def consent_pages(person_id: Optional[int], *pages: str) -> List[str]:
    """Pages showing consent-derived state for a person, in a stable order without duplicates."""
    paths = list(pages)
    if person_id:
        paths.append(client_profile(person_id))
    return list(dict.fromkeys(paths))


def revalidate_paths(response, paths: Iterable[str]) -> None:
    """Tell the rendering layer which pages are stale. Only called after the transaction committed."""
    paths = list(paths)
    if not paths:
        return
    response.headers[REVALIDATE_HEADER] = ",".join(paths)
    response.headers["Cache-Control"] = "no-store"
    log.debug("revalidate %s", paths)
