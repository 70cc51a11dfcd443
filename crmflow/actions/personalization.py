"""Merge-token substitution for message and record templates."""

from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Tuple

# token name -> (contact field, fallback)
TOKENS: Dict[str, Tuple[str, str]] = {
    "first_name": ("first_name", "there"),
    "last_name": ("last_name", ""),
    "full_name": ("full_name", "there"),
    "email": ("email", ""),
    "phone": ("phone", ""),
    "company": ("company_name", ""),
    "company_name": ("company_name", ""),
    "job_title": ("job_title", ""),
    "address": ("address_line1", ""),
    "city": ("city", ""),
    "state": ("state", ""),
    "zip_code": ("zip_code", ""),
    "country": ("country", ""),
}

_TOKEN_RE = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
_CUSTOM_RE = re.compile(r"\{\{\s*custom:([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")


def _contact_value(contact: Mapping[str, Any], field: str) -> str:
    if field == "full_name":
        value = contact.get("full_name") or " ".join(
            p for p in (contact.get("first_name"), contact.get("last_name")) if p
        )
    else:
        value = contact.get(field)
    if value is None or value == "":
        return ""
    return str(value)


def personalize(
    template: str, contact: Mapping[str, Any], use_fallbacks: bool = True
) -> str:
    """Replace ``{{token}}`` and ``{{custom:field}}`` placeholders.

    Unknown tokens are left untouched.
    """
    if not template:
        return template
    custom = contact.get("custom_fields") or {}

    def custom_sub(match: re.Match) -> str:
        value = custom.get(match.group(1))
        if value is None:
            return "" if use_fallbacks else match.group(0)
        return str(value)

    def token_sub(match: re.Match) -> str:
        name = match.group(1)
        if name not in TOKENS:
            return match.group(0)
        field, fallback = TOKENS[name]
        return _contact_value(contact, field) or (fallback if use_fallbacks else "")

    return _TOKEN_RE.sub(token_sub, _CUSTOM_RE.sub(custom_sub, template))


def unknown_tokens(template: str) -> list[str]:
    """Return the distinct placeholders in ``template`` that cannot be resolved."""
    unknown: list[str] = []
    for match in re.finditer(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_:]*)\s*\}\}", template or ""):
        name = match.group(1)
        if name in TOKENS or name.startswith("custom:") or name in unknown:
            continue
        unknown.append(name)
    return unknown
