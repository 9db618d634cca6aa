"""
Reference expressions inside resource arguments.

hcl2 renders every non-literal expression as a "${...}" string, so
arguments reach the engine as plain Python values where strings may hold
interpolations such as "${aws_key_pair.k1.key_name}" or "sg-${var.env}".

Only references are supported: variables (var.name), resource attributes
(type.name.attribute, optionally followed by .key, [index] or ["key"]) and
path.module / path.root. A string that is exactly one interpolation
evaluates to the referenced value itself; anything else renders the
referenced values into the string.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..errors import ConfigError, UnresolvedReferenceError

# "$${" is the HCL escape for a literal "${"
INTERPOLATION_RE = re.compile(r'(?<!\$)\$\{([^}]*)\}')
_TOKEN_RE = re.compile(r'\.?([A-Za-z_][A-Za-z0-9_-]*)|\[(\d+)\]|\["([^"]*)"\]')

PathPart = Union[str, int]


class _Unknown:
    """Marker for a value only known after the resource producing it is applied."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"

    def __reduce__(self):
        return (_Unknown, ())


UNKNOWN = _Unknown()


def is_known(value: Any) -> bool:
    """True if value (recursively) contains no UNKNOWN."""
    if value is UNKNOWN:
        return False
    if isinstance(value, dict):
        return all(is_known(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return all(is_known(v) for v in value)
    return True


@dataclass(frozen=True)
class Reference:
    """
    A parsed reference expression.

    Attributes:
        expression: Original expression text (without ${})
        parts: Tokenized path, e.g. ("aws_instance", "web", "public_ip")
    """
    expression: str
    parts: Tuple[PathPart, ...]

    @property
    def is_variable(self) -> bool:
        return self.parts[0] == "var"

    @property
    def is_path(self) -> bool:
        return self.parts[0] == "path"

    @property
    def is_resource(self) -> bool:
        return not (self.is_variable or self.is_path)

    @property
    def address(self) -> str:
        """Resource address (type.name) for resource references."""
        return f"{self.parts[0]}.{self.parts[1]}"

    @property
    def attribute(self) -> Optional[str]:
        """First attribute after the address, or None for a bare address."""
        if len(self.parts) > 2:
            return str(self.parts[2])
        return None

    @property
    def subpath(self) -> Tuple[PathPart, ...]:
        """Path below the attribute (or below the variable name)."""
        return self.parts[3:] if self.is_resource else self.parts[2:]


def parse_reference(expression: str) -> Reference:
    """
    Parse the text inside a ${...} into a Reference.

    Raises:
        ConfigError: For expressions other than plain references
    """
    text = expression.strip()
    parts: List[PathPart] = []
    pos = 0

    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or (pos == 0 and match.group(0).startswith(".")):
            raise ConfigError(f"Unsupported expression: ${{{expression}}}")
        name, index, key = match.groups()
        if name is not None:
            parts.append(name)
        elif index is not None:
            parts.append(int(index))
        else:
            parts.append(key)
        pos = match.end()

    if len(parts) < 2 or not isinstance(parts[0], str) or not isinstance(parts[1], str):
        raise ConfigError(f"Unsupported expression: ${{{expression}}}")

    if parts[0] in ("local", "data", "module", "count", "each", "self"):
        raise ConfigError(f"Unsupported expression: ${{{expression}}}")

    return Reference(expression=text, parts=tuple(parts))


def find_references(value: Any) -> List[Reference]:
    """Collect every reference in a (nested) argument value."""
    found: List[Reference] = []
    if isinstance(value, str):
        for match in INTERPOLATION_RE.finditer(value):
            found.append(parse_reference(match.group(1)))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, (list, tuple)):
        for item in value:
            found.extend(find_references(item))
    return found


def traverse(value: Any, path: Tuple[PathPart, ...], expression: str = "") -> Any:
    """
    Walk into a value by attribute names and indexes.

    Raises:
        UnresolvedReferenceError: If a step does not exist
    """
    current = value
    for step in path:
        if current is UNKNOWN:
            return UNKNOWN
        try:
            if isinstance(current, dict):
                current = current[str(step)]
            elif isinstance(current, (list, tuple)) and isinstance(step, int):
                current = current[step]
            else:
                raise KeyError(step)
        except (KeyError, IndexError):
            raise UnresolvedReferenceError(expression or str(step), reason=f"no element '{step}'")
    return current


def render(value: Any) -> str:
    """Render a value for embedding into an interpolated string."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def evaluate(value: Any, lookup: Callable[[Reference], Any], unescape: bool = True) -> Any:
    """
    Evaluate all references inside a (nested) value.

    Args:
        value: Argument value, possibly containing ${...} strings
        lookup: Resolves one Reference to a value (or UNKNOWN)
        unescape: Turn "$${" escapes into literal "${"

    Returns:
        The value with references replaced. A string embedding an
        UNKNOWN reference becomes UNKNOWN as a whole.
    """
    if isinstance(value, str):
        return _evaluate_string(value, lookup, unescape)
    if isinstance(value, dict):
        return {k: evaluate(v, lookup, unescape) for k, v in value.items()}
    if isinstance(value, list):
        return [evaluate(v, lookup, unescape) for v in value]
    return value


def _evaluate_string(text: str, lookup: Callable[[Reference], Any], unescape: bool) -> Any:
    whole = INTERPOLATION_RE.fullmatch(text)
    if whole:
        return lookup(parse_reference(whole.group(1)))

    if not INTERPOLATION_RE.search(text):
        return text.replace("$${", "${") if unescape else text

    unknown = False

    def _replace(match):
        nonlocal unknown
        resolved = lookup(parse_reference(match.group(1)))
        if not is_known(resolved):
            unknown = True
            return ""
        return render(resolved)

    rendered = INTERPOLATION_RE.sub(_replace, text)
    if unknown:
        return UNKNOWN
    return rendered.replace("$${", "${") if unescape else rendered


def substitute_variables(
    value: Any,
    variables: Dict[str, Any],
    paths: Optional[Dict[str, str]] = None,
    source: Optional[str] = None,
) -> Any:
    """
    Replace var.* and path.* references, leaving resource references intact.

    Raises:
        UnresolvedReferenceError: For undeclared variables or unknown path names
    """
    paths = paths or {}

    def _lookup(ref: Reference) -> Any:
        if ref.is_variable:
            name = str(ref.parts[1])
            if name not in variables:
                raise UnresolvedReferenceError(f"var.{name}", source, "variable is not declared")
            return traverse(variables[name], ref.subpath, ref.expression)
        if ref.is_path:
            name = str(ref.parts[1])
            if name not in paths:
                raise UnresolvedReferenceError(ref.expression, source, "unknown path value")
            return paths[name]
        return _Deferred(ref)

    return _restore(evaluate(value, _lookup, unescape=False))


class _Deferred:
    """Placeholder keeping a resource reference verbatim during variable substitution."""

    def __init__(self, ref: Reference):
        self.ref = ref

    def __str__(self) -> str:
        return "${" + self.ref.expression + "}"


def _restore(value: Any) -> Any:
    if isinstance(value, _Deferred):
        return str(value)
    if isinstance(value, dict):
        return {k: _restore(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_restore(v) for v in value]
    return value
