import re
import uuid
from datetime import UTC, datetime
from typing import Any

from jinja2 import ChainableUndefined, TemplateError, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from apps.flows.exceptions import FormulaError

# {{ name }} / {{ agent.field }}
TEMPLATE_REFERENCE_RE = re.compile(r"\{\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}\}")
SINGLE_REFERENCE_RE = re.compile(r"^\s*\{\{\s*([A-Za-z_][\w]*(?:\.[A-Za-z_][\w]*)*)\s*\}\}\s*$")

_CAMEL_BOUNDARY_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_NON_WORD_RE = re.compile(r"[^a-z0-9]+")

# unknown variables, including chained attribute access, render as empty text
_sandbox = SandboxedEnvironment(undefined=ChainableUndefined)


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


def snake_case(name: str) -> str:
    """Convert a display name into the identifier used for variable namespaces.

    >>> snake_case("Story Teller")
    'story_teller'
    >>> snake_case("healthDelta")
    'health_delta'
    """
    name = _CAMEL_BOUNDARY_RE.sub("_", name.strip())
    return _NON_WORD_RE.sub("_", name.lower()).strip("_")


def template_references(template: str | None) -> list[str]:
    """Return the variable names referenced with ``{{ ... }}`` in ``template``, in order, without duplicates."""
    if not template:
        return []
    return list(dict.fromkeys(TEMPLATE_REFERENCE_RE.findall(template)))


def single_reference(template: str | None) -> str | None:
    """Return the variable name if ``template`` consists of exactly one reference."""
    if not template:
        return None
    match = SINGLE_REFERENCE_RE.match(template)
    return match.group(1) if match else None


def render_template(template: str, context: dict[str, Any]) -> str:
    try:
        return _sandbox.from_string(template).render(context)
    except TemplateSyntaxError as e:
        raise FormulaError(f"Invalid template syntax: {e.message}", logic=template) from e
    except TemplateError as e:
        raise FormulaError(f"Template could not be rendered: {e}", logic=template) from e


def check_template_syntax(template: str) -> str | None:
    """Return the syntax error message for ``template`` or None if it parses."""
    try:
        _sandbox.parse(template)
    except TemplateSyntaxError as e:
        return e.message
    return None


def set_dotted(target: dict, path: str, value: Any):
    """Assign ``value`` at ``path`` ("a.b.c") creating intermediate dicts as required."""
    parts = path.split(".")
    for part in parts[:-1]:
        existing = target.get(part)
        if not isinstance(existing, dict):
            existing = {}
            target[part] = existing
        target = existing
    target[parts[-1]] = value


def flatten(mapping: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    """Flatten nested dicts into dotted keys. Leaf values (including lists) are kept as-is."""
    flat = {}
    for key, value in mapping.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and value:
            flat.update(flatten(value, name))
        else:
            flat[name] = value
    return flat


def merge_dicts(left: dict, right: dict) -> dict:
    """State reducer: keys from ``right`` replace keys in ``left``."""
    return {**left, **right}
