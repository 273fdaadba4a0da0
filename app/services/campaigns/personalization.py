"""
Message personalization.

Templates use ``{placeholder}`` or ``{{placeholder}}``. Unknown placeholders
are left untouched.
"""

import re
from decimal import Decimal
from typing import Any, Callable, Dict

DEFAULT_NAME = "Valued Customer"


def _get(customer: Any, name: str) -> Any:
    if isinstance(customer, dict):
        return customer.get(name)
    return getattr(customer, name, None)


def _full_name(customer: Any) -> str:
    name = f"{_get(customer, 'first_name') or ''} {_get(customer, 'last_name') or ''}".strip()
    return name or DEFAULT_NAME


def _number(value: Any) -> str:
    if value is None:
        return "0"
    if isinstance(value, Decimal):
        value = value.normalize()
        return format(value, "f")
    return str(value)


_RESOLVERS: Dict[str, Callable[[Any], str]] = {
    "firstName": lambda c: _get(c, "first_name") or DEFAULT_NAME,
    "lastName": lambda c: _get(c, "last_name") or "",
    "email": lambda c: _get(c, "email") or "",
    "phone": lambda c: _get(c, "phone") or "",
    "totalSpend": lambda c: _number(_get(c, "total_spend")),
    "totalVisits": lambda c: _number(_get(c, "total_visits")),
    "customerName": _full_name,
}

_ALIASES = {
    "first_name": "firstName",
    "customer_first_name": "firstName",
    "customerfirst_name": "firstName",
    "last_name": "lastName",
    "customer_last_name": "lastName",
    "total_spend": "totalSpend",
    "total_visits": "totalVisits",
    "customer_name": "customerName",
}

_PLACEHOLDER = re.compile(
    r"\{\{?(" + "|".join(sorted(list(_RESOLVERS) + list(_ALIASES), key=len, reverse=True)) + r")\}?\}"
)


def personalize_message(template: str, customer: Any) -> str:
    """Fill customer placeholders in ``template``."""

    def replace(match: "re.Match[str]") -> str:
        key = _ALIASES.get(match.group(1), match.group(1))
        return _RESOLVERS[key](customer)

    return _PLACEHOLDER.sub(replace, template or "")
