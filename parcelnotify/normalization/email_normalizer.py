"""Email address normalizer.

Strips whitespace and lowercases the domain.  The local part is kept
verbatim: mail servers may treat it case-sensitively, and we deliver to
exactly what the subscriber entered.

Safety rule: raw values are never logged.
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_ADDRESS_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)+$")
_MAX_LENGTH = 254


def normalize_email(raw: str) -> str | None:
    """Return *raw* as a deliverable address, or ``None``.

    Parameters
    ----------
    raw:
        Address as supplied at opt-in.

    Returns
    -------
    str | None
        ``local@domain`` with the domain lowercased, or ``None`` for an
        empty value, a value longer than 254 characters, or anything that
        does not look like a single mailbox address.
    """
    stripped = (raw or "").strip()
    if not stripped or len(stripped) > _MAX_LENGTH:
        return None

    if not _ADDRESS_RE.match(stripped):
        logger.debug("normalize_email: rejected input (length=%d)", len(stripped))
        return None

    local, _, domain = stripped.rpartition("@")
    return f"{local}@{domain.lower()}"
