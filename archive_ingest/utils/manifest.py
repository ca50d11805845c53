"""Resource list parsing and descriptor validation.

A resource list is a plain text file with one archive per line::

    # comment lines and blank lines are ignored
    https://example.org/data/2024-10.zip  sha256:9f86d0...  2024-10
    https://example.org/data/latest.zip   -                 latest
    https://example.org/data/extra.zip    version=v2 name=extras

The first field is the URL. Positional fields after it are the expected
hash (``-`` for none) and the version tag; ``hash=``, ``version=`` and
``name=`` fields may be given in any order instead.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional
from urllib.parse import urlparse

from ..core.errors import ConfigurationError
from ..core.state import ResourceDescriptor, split_hash

SUPPORTED_SCHEMES = ("http", "https")
_NAMED_FIELDS = ("hash", "version", "name")


def validate_url(url: str) -> tuple[bool, Optional[str]]:
    """Validate a URL and return validation result with error message.

    Args:
        url: URL to validate.

    Returns:
        Tuple of (is_valid, error_message). error_message is None if valid.

    Examples:
        >>> validate_url("https://example.org/a.zip")
        (True, None)
        >>> validate_url("ftp://example.org/a.zip")[0]
        False
    """
    if not url or not url.strip():
        return False, "URL is empty"

    parsed = urlparse(url.strip())
    if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
        return False, f"Unsupported URL scheme {parsed.scheme!r} (expected http or https)"
    if not parsed.netloc:
        return False, f"URL has no host: {url}"
    return True, None


def validate_descriptor(descriptor: ResourceDescriptor) -> None:
    """Check a descriptor is structurally usable.

    Raises:
        ConfigurationError: Bad URL or unparseable expected hash.
    """
    valid, error = validate_url(descriptor.uri)
    if not valid:
        raise ConfigurationError(error)
    if descriptor.expected_hash:
        try:
            split_hash(descriptor.expected_hash)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


def parse_descriptor_line(line: str) -> Optional[ResourceDescriptor]:
    """Parse one resource-list line.

    Returns:
        The descriptor, or None for blank and comment lines.

    Raises:
        ConfigurationError: Unknown named field or too many positional fields.
    """
    line = line.strip()
    if not line or line.startswith("#"):
        return None

    uri, *rest = line.split()
    values: dict[str, Optional[str]] = {"hash": None, "version": "", "name": None}
    positional = iter(("hash", "version"))

    for token in rest:
        if token.startswith("#"):
            break
        if "=" in token:
            key, _, value = token.partition("=")
            if key not in _NAMED_FIELDS:
                raise ConfigurationError(f"Unknown field {key!r} in line: {line}")
        else:
            key = next(positional, None)
            if key is None:
                raise ConfigurationError(f"Too many fields in line: {line}")
            value = token
        if value == "-":
            continue
        values[key] = value

    return ResourceDescriptor(
        uri=uri,
        expected_hash=values["hash"],
        version=values["version"] or "",
        name=values["name"],
    )


def parse_descriptors(lines: Iterable[str], source: str = "<input>") -> list[ResourceDescriptor]:
    """Parse and validate resource-list lines.

    Raises:
        ConfigurationError: Any line is invalid; the message names the line number.
    """
    descriptors: list[ResourceDescriptor] = []
    for number, line in enumerate(lines, start=1):
        try:
            descriptor = parse_descriptor_line(line)
            if descriptor is None:
                continue
            validate_descriptor(descriptor)
        except ConfigurationError as e:
            raise ConfigurationError(f"{source}:{number}: {e}") from e
        descriptors.append(descriptor)
    return descriptors


def parse_descriptor_file(filepath: Path) -> list[ResourceDescriptor]:
    """Parse a resource-list file.

    Args:
        filepath: Path to the list file.

    Returns:
        Descriptors in file order.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ConfigurationError: If a line is invalid.
    """
    if not filepath.exists():
        raise FileNotFoundError(f"Resource list not found: {filepath}")

    with open(filepath, "r", encoding="utf-8") as f:
        return parse_descriptors(f, source=str(filepath))


__all__ = [
    "SUPPORTED_SCHEMES",
    "parse_descriptor_file",
    "parse_descriptor_line",
    "parse_descriptors",
    "validate_descriptor",
    "validate_url",
]
