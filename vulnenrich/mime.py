"""MIME type composition and parsing for enrichment payloads.

Every enricher labels its contribution to a report with a MIME type.
Payloads that are maps keyed by vulnerability identifier use the
container type ``message/vnd.clair.map.vulnerability``, which must carry
exactly one of a ``schema`` parameter (link to a machine-readable schema)
or a ``type`` parameter (a documented, named schema)::

    message/vnd.clair.map.vulnerability; enricher=nvd type=NvdV2

Schema-agnostic payloads do not use the container type; the adapter's own
label is used verbatim instead.
"""

import re
from dataclasses import dataclass, field

from .exceptions import MediaTypeError

VULNERABILITY_MAP = "message/vnd.clair.map.vulnerability"

_PARAM_RE = re.compile(r'([A-Za-z0-9][A-Za-z0-9_.+-]*)=("[^"]*"|[^\s;]+)')
_ESSENCE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9!#$&^_.+-]*/[A-Za-z0-9][A-Za-z0-9!#$&^_.+-]*$")


@dataclass(frozen=True)
class MediaType:
    """A parsed MIME type.

    Attributes:
        essence: Lower-cased ``type/subtype``.
        params: Parameter map (keys lower-cased, values verbatim).
    """

    essence: str
    params: dict[str, str] = field(default_factory=dict)

    def __str__(self) -> str:
        if not self.params:
            return self.essence
        keys = sorted(self.params)
        if "enricher" in keys:
            keys.remove("enricher")
            keys.insert(0, "enricher")
        rendered = " ".join(f"{k}={_quote(self.params[k])}" for k in keys)
        return f"{self.essence}; {rendered}"

    @property
    def is_vulnerability_map(self) -> bool:
        return self.essence == VULNERABILITY_MAP


def _quote(value: str) -> str:
    if not value or re.search(r"[\s;\"]", value):
        return '"' + value.replace('"', "") + '"'
    return value


def parse_media_type(value: str) -> MediaType:
    """Parse a MIME type string.

    Parameters may be separated by ``;`` and/or whitespace; double quotes
    around values are removed.

    Args:
        value: MIME type string, e.g.
            ``message/vnd.clair.map.vulnerability; enricher=nvd type=NvdV2``.

    Returns:
        Parsed ``MediaType``.

    Raises:
        MediaTypeError: If the string has no valid ``type/subtype``.
    """
    head, _, rest = (value or "").partition(";")
    essence = head.strip().lower()
    if not _ESSENCE_RE.match(essence):
        raise MediaTypeError(f"invalid media type: {value!r}")

    params: dict[str, str] = {}
    for m in _PARAM_RE.finditer(rest):
        params[m.group(1).lower()] = m.group(2).strip('"')
    return MediaType(essence=essence, params=params)


def vulnerability_map_type(enricher: str, *, schema: str | None = None, type_: str | None = None) -> str:
    """Compose a container MIME type for a vulnerability-keyed map.

    Args:
        enricher: Name of the producing enricher.
        schema: URL of a machine-readable schema for the map values.
        type_: Name of a documented schema, when no hosted one exists.

    Returns:
        The MIME type string.

    Raises:
        MediaTypeError: If neither or both of ``schema`` and ``type_`` are
            given, or ``enricher`` is empty.
    """
    if not enricher:
        raise MediaTypeError("enricher name is required")
    if (schema is None) == (type_ is None):
        raise MediaTypeError("exactly one of schema or type is required")
    params = {"enricher": enricher}
    if schema is not None:
        params["schema"] = schema
    else:
        params["type"] = type_  # type: ignore[assignment]
    return str(MediaType(essence=VULNERABILITY_MAP, params=params))


def is_vulnerability_map(value: str) -> bool:
    """Report whether ``value`` uses the vulnerability-map container type."""
    try:
        return parse_media_type(value).is_vulnerability_map
    except MediaTypeError:
        return False


def validate(value: str) -> MediaType:
    """Parse ``value`` and enforce the container-type convention.

    Raises:
        MediaTypeError: If the string is malformed, or is a container type
            carrying zero or both of ``schema`` / ``type``.
    """
    mt = parse_media_type(value)
    if mt.is_vulnerability_map and (("schema" in mt.params) == ("type" in mt.params)):
        raise MediaTypeError(f"{VULNERABILITY_MAP} requires exactly one of schema or type: {value!r}")
    return mt
