"""Input validation utilities.

Provides validation for:
- Port numbers
- IPv4 CIDR ranges (allow-range annotation)
- Network interface names

All validators return the validated (normalized) value or raise ParseError.
"""

import ipaddress
import re

from epok.core.exceptions import ParseError


MIN_PORT = 1
MAX_PORT = 65535

# Linux IFNAMSIZ is 16 including the trailing NUL
MAX_INTERFACE_LENGTH = 15
INTERFACE_PATTERN = re.compile(r"^[A-Za-z0-9_.:@-]+$")


def validate_port(value: str | int, *, field: str = "port") -> int:
    """Validate a port number.

    Args:
        value: Port number (int or decimal string)
        field: Name used in the error message

    Returns:
        The validated port number

    Raises:
        ParseError: If the value is not an integer or out of range
    """
    if isinstance(value, str):
        text = value.strip()
        if not text.isdigit():
            raise ParseError(
                f"Invalid {field}: {value!r} is not a number",
                value=value,
                hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
            )
        port = int(text)
    else:
        port = value

    if not MIN_PORT <= port <= MAX_PORT:
        raise ParseError(
            f"Invalid {field}: {port}",
            value=str(value),
            hint=f"Port must be between {MIN_PORT} and {MAX_PORT}",
        )
    return port


def validate_cidr(value: str) -> str:
    """Validate an IPv4 CIDR and return it in normalized network form.

    Host bits are cleared and a bare address gets a /32 suffix, matching what
    iptables-save prints for a ``-s`` match.

    Args:
        value: CIDR string to validate (e.g., "10.0.0.0/24")

    Returns:
        The normalized CIDR string

    Raises:
        ParseError: If the value is not an IPv4 network
    """
    text = value.strip()
    try:
        network = ipaddress.ip_network(text, strict=False)
    except ValueError as e:
        raise ParseError(
            f"Invalid CIDR notation: {value!r}",
            value=value,
            hint="Use format like 10.0.0.0/24 or 192.168.1.0/24",
            details=[str(e)],
        ) from e

    if network.version != 4:
        raise ParseError(
            f"Only IPv4 ranges are supported: {value!r}",
            value=value,
        )

    return str(network)


def validate_interface(value: str) -> str:
    """Validate a network interface name.

    Raises:
        ParseError: If the name is empty, too long or has shell-unsafe characters
    """
    name = value.strip()
    if not name:
        raise ParseError("Interface name cannot be empty", value=value)
    if len(name) > MAX_INTERFACE_LENGTH:
        raise ParseError(
            f"Interface name too long: {name!r}",
            value=value,
            hint=f"Linux interface names have at most {MAX_INTERFACE_LENGTH} characters",
        )
    if not INTERFACE_PATTERN.match(name):
        raise ParseError(f"Invalid interface name: {name!r}", value=value)
    return name
