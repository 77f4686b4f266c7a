"""Lenient template rendering for step subjects and bodies.

Templates use ``{{variable}}`` placeholders. Unknown variables render back as
their literal placeholder so the parts that did resolve still go out.
"""
from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, Dict, Mapping, Optional

from jinja2 import ChainableUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")


class LiteralUndefined(ChainableUndefined):
    """Undefined that prints as the placeholder it came from."""

    __slots__ = ()

    def __str__(self) -> str:
        return "{{" + str(self._undefined_name) + "}}"

    def __html__(self) -> str:
        return str(self)


_env = SandboxedEnvironment(
    undefined=LiteralUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)


def _substitute_known(template: str, variables: Mapping[str, Any]) -> str:
    def replace(match: re.Match) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(replace, template)


def render(template: Optional[str], variables: Mapping[str, Any]) -> str:
    """Pure function; never raises for unknown variables or malformed markup."""
    if not template:
        return ""

    try:
        return _env.from_string(template).render(**{k: v for k, v in variables.items() if v is not None})
    except TemplateError:
        # Malformed markup (e.g. a stray "{%"): fill in what we can and leave the rest as-is.
        logger.warning("Template failed to compile; using placeholder substitution")
        return _substitute_known(template, variables)


def _first_name(full_name: str) -> str:
    parts = full_name.strip().split()
    return parts[0] if parts else full_name


def _format_phone(phone: Optional[str]) -> Optional[str]:
    if not phone:
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[0:3]}) {digits[3:6]}-{digits[6:]}"
    return phone


def build_template_variables(
    *,
    name: Optional[str],
    email: Optional[str],
    phone: Optional[str],
    attributes: Optional[Mapping[str, Any]] = None,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """
    Variables exposed to templates, in both camelCase and snake_case.

    ``attributes`` carries host-supplied values (businessName, reviewLink, ...)
    and wins over the computed defaults.
    """
    full_name = name or "Valued Customer"
    first_name = _first_name(full_name)
    today = today or date.today()
    current_date = f"{today:%B} {today.day}, {today.year}"

    variables: Dict[str, Any] = {
        "customerName": full_name,
        "customer_name": full_name,
        "customerFirstName": first_name,
        "customer_first_name": first_name,
        "customerEmail": email,
        "customer_email": email,
        "customerPhone": _format_phone(phone),
        "customer_phone": _format_phone(phone),
        "serviceType": "service",
        "service_type": "service",
        "currentDate": current_date,
        "current_date": current_date,
        "currentYear": str(today.year),
        "current_year": str(today.year),
    }

    for key, value in (attributes or {}).items():
        variables[str(key)] = value

    return variables
