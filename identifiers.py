"""
Identifier Registry for the charter marketplace.

Every entity carries a human-readable code of the form

    {PREFIX}-{CONTEXT}-{YYYYMMDD}-{SUFFIX}     (dated kinds)
    {PREFIX}-{CONTEXT}-{SUFFIX}                (undated kinds)

CONTEXT is an operator/user code or, for invoices and payments, the code of
the entity they reference, so identifiers nest:

    QT-OP-JETS-7K2P-20250314-9F3A
    INV-QT-OP-JETS-7K2P-20250314-9F3A-20250315-X8QD
    PMT-INV-...-20250316-4Z

Parsing therefore reads positionally from the right: suffix last, date
second to last, and everything between the prefix and the date is context.
"""

from __future__ import annotations

import enum
import random
import re
import string
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Dict, Optional, Tuple

from errors import ConflictError, MalformedIdentifierError, ValidationError

ALPHABET = string.ascii_uppercase + string.digits
DATE_FORMAT = "%Y%m%d"

_SEGMENT = re.compile(r"^[A-Z0-9]+$")


class IdKind(str, enum.Enum):
    QUOTE_REQUEST = "QR"
    OFFER = "QT"
    INVOICE = "INV"
    FLIGHT = "FLT"
    AIRCRAFT = "AC"
    BOOKING = "BK"
    PASSENGER = "PAX"
    CLIENT = "CL"
    PAYMENT = "PMT"
    DOCUMENT = "DOC"
    E_TICKET = "ETKT"


DATED_KINDS = frozenset({
    IdKind.QUOTE_REQUEST, IdKind.OFFER, IdKind.INVOICE,
    IdKind.FLIGHT, IdKind.BOOKING, IdKind.PAYMENT,
})

# Current suffix width per kind (default 4)
SUFFIX_WIDTH: Dict[IdKind, int] = {
    IdKind.PAYMENT: 2,
}

# Widths still present in storage from older formats
LEGACY_SUFFIX_WIDTH: Dict[IdKind, int] = {
    IdKind.INVOICE: 8,
}

# Old quote requests were issued as RQ-{user}-{date}-XXXX
LEGACY_PREFIXES: Dict[str, IdKind] = {
    "RQ": IdKind.QUOTE_REQUEST,
}

# Old payments had no context segment: PMT-{date}-{6 random}
LEGACY_PAYMENT_SUFFIX_WIDTH = 6

# Old offers copied the request id tail without uppercasing it
_MIXED_CASE_SUFFIX = re.compile(r"^[A-Za-z0-9]{4}$")

USER_ROLE_PREFIXES = {
    "passenger": "PA",
    "operator": "OP",
    "agent": "AG",
    "admin": "AD",
}
USER_CODE_PATTERN = re.compile(r"^(PA|OP|AG|AD)-([A-Z]{4})-[A-Z0-9]{4}$")


@dataclass(frozen=True)
class ParsedIdentifier:
    kind: IdKind
    prefix: str
    context: Optional[str]
    date: Optional[date]
    suffix: str
    legacy: bool = False


def _as_kind(kind) -> IdKind:
    if isinstance(kind, IdKind):
        return kind
    try:
        return IdKind(str(kind).upper())
    except ValueError:
        pass
    try:
        return IdKind[str(kind).upper()]
    except KeyError:
        raise ValidationError(f"Unknown identifier kind: {kind!r}")


def suffix_width(kind: IdKind, legacy: bool = False) -> int:
    if legacy and kind in LEGACY_SUFFIX_WIDTH:
        return LEGACY_SUFFIX_WIDTH[kind]
    return SUFFIX_WIDTH.get(kind, 4)


def normalize_context(context: str) -> str:
    """Uppercase a context code and check each hyphen-separated segment."""
    if context is None or not str(context).strip():
        raise ValidationError("Identifier context is required")
    value = str(context).strip().upper()
    if not all(_SEGMENT.match(seg) for seg in value.split("-")):
        raise ValidationError(f"Invalid identifier context: {context!r}")
    return value


def _parse_date(segment: str) -> Optional[date]:
    if len(segment) != 8 or not segment.isdigit():
        return None
    try:
        return datetime.strptime(segment, DATE_FORMAT).date()
    except ValueError:
        return None


class IdentifierRegistry:
    """Generates identifiers from an injected clock and random source."""

    def __init__(self, clock, rng: Optional[random.Random] = None):
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    def random_suffix(self, width: int) -> str:
        return "".join(self.rng.choice(ALPHABET) for _ in range(width))

    def generate(self, kind, context: Optional[str] = None, link_to: Optional[str] = None,
                 legacy: bool = False, on: Optional[date] = None) -> str:
        """
        Build a new identifier.

        link_to: for offers, the originating request id. Its last four
        characters become the suffix so related codes are visually linked.
        legacy: emit the older format still accepted by `parse`.
        """
        kind = _as_kind(kind)
        stamp = (on or self.clock.now()).strftime(DATE_FORMAT)

        if legacy and kind == IdKind.PAYMENT:
            return f"{kind.value}-{stamp}-{self.random_suffix(LEGACY_PAYMENT_SUFFIX_WIDTH)}"

        ctx = normalize_context(context)
        width = suffix_width(kind, legacy)
        if link_to and kind == IdKind.OFFER:
            tail = re.sub(r"[^A-Za-z0-9]", "", str(link_to))[-width:].upper()
            suffix = tail if len(tail) == width else self.random_suffix(width)
        else:
            suffix = self.random_suffix(width)

        prefix = kind.value
        if legacy and kind == IdKind.QUOTE_REQUEST:
            prefix = "RQ"

        if kind in DATED_KINDS:
            return f"{prefix}-{ctx}-{stamp}-{suffix}"
        return f"{prefix}-{ctx}-{suffix}"

    def generate_unique(self, kind, context: Optional[str], exists: Callable[[str], bool],
                        attempts: int = 10, **kwargs) -> str:
        """Generate until `exists` reports the code is free."""
        for _ in range(attempts):
            code = self.generate(kind, context, **kwargs)
            if not exists(code):
                return code
        raise ConflictError(f"Could not allocate a unique {_as_kind(kind).value} identifier",
                            {"attempts": attempts})

    def generate_user_code(self, role: str, last_name: str) -> str:
        prefix = USER_ROLE_PREFIXES.get((role or "").lower())
        if not prefix:
            raise ValidationError(f"Unknown user role: {role!r}")
        letters = re.sub(r"[^A-Za-z]", "", last_name or "").upper()[:4].ljust(4, "X")
        return f"{prefix}-{letters}-{self.random_suffix(4)}"


def _fail(kind: IdKind, code: str, reason: str):
    raise MalformedIdentifierError(
        f"Malformed {kind.value} identifier {code!r}: {reason}",
        {"kind": kind.value, "code": code},
    )


def parse(kind, code: str) -> ParsedIdentifier:
    """Split an identifier into its fields or raise MalformedIdentifierError."""
    kind = _as_kind(kind)
    if not isinstance(code, str) or not code:
        _fail(kind, str(code), "empty")

    parts = code.split("-")
    mixed_case = (kind == IdKind.OFFER and not _SEGMENT.match(parts[-1])
                  and _MIXED_CASE_SUFFIX.match(parts[-1]) is not None)
    checked = parts[:-1] if mixed_case else parts
    if not all(_SEGMENT.match(p) for p in checked):
        _fail(kind, code, "segments must be uppercase alphanumeric")

    prefix = parts[0]
    legacy = False
    if prefix != kind.value:
        if LEGACY_PREFIXES.get(prefix) == kind:
            legacy = True
        else:
            _fail(kind, code, f"expected prefix {kind.value}")

    if kind == IdKind.PAYMENT and len(parts) == 3:
        stamp = _parse_date(parts[1])
        if stamp is None or len(parts[2]) != LEGACY_PAYMENT_SUFFIX_WIDTH:
            _fail(kind, code, "bad legacy payment format")
        return ParsedIdentifier(kind, prefix, None, stamp, parts[2], legacy=True)

    minimum = 4 if kind in DATED_KINDS else 3
    if len(parts) < minimum:
        _fail(kind, code, f"expected at least {minimum} segments, got {len(parts)}")

    suffix = parts[-1]
    if len(suffix) == suffix_width(kind):
        legacy = legacy or mixed_case
    elif kind in LEGACY_SUFFIX_WIDTH and len(suffix) == LEGACY_SUFFIX_WIDTH[kind]:
        legacy = True
    else:
        _fail(kind, code, f"suffix {suffix!r} has wrong width")

    stamp = None
    if kind in DATED_KINDS:
        stamp = _parse_date(parts[-2])
        if stamp is None:
            _fail(kind, code, f"bad date segment {parts[-2]!r}")
        context = "-".join(parts[1:-2])
    else:
        context = "-".join(parts[1:-1])

    return ParsedIdentifier(kind, prefix, context, stamp, suffix, legacy)


def _build_patterns() -> Dict[IdKind, Tuple[re.Pattern, ...]]:
    ctx = r"[A-Z0-9]+(?:-[A-Z0-9]+)*"
    patterns = {}
    for kind in IdKind:
        prefixes = [kind.value] + [p for p, k in LEGACY_PREFIXES.items() if k == kind]
        widths = [suffix_width(kind)]
        if kind in LEGACY_SUFFIX_WIDTH:
            widths.append(LEGACY_SUFFIX_WIDTH[kind])
        head = "(?:%s)" % "|".join(prefixes)
        tail = "(?:%s)" % "|".join("[A-Z0-9]{%d}" % w for w in widths)
        date_part = r"-(\d{8})" if kind in DATED_KINDS else ""
        compiled = [re.compile(rf"^{head}-{ctx}{date_part}-{tail}$")]
        if kind == IdKind.PAYMENT:
            compiled.append(re.compile(rf"^PMT-(\d{{8}})-[A-Z0-9]{{{LEGACY_PAYMENT_SUFFIX_WIDTH}}}$"))
        if kind == IdKind.OFFER:
            compiled.append(re.compile(rf"^QT-{ctx}-(\d{{8}})-[A-Za-z0-9]{{4}}$"))
        patterns[kind] = tuple(compiled)
    return patterns


PATTERNS = _build_patterns()


def validate(kind, code) -> bool:
    """True if `code` is a well-formed identifier of `kind`. Never raises."""
    try:
        kind = _as_kind(kind)
    except ValidationError:
        return False
    if not isinstance(code, str):
        return False
    for pattern in PATTERNS[kind]:
        match = pattern.match(code)
        if match and (not match.groups() or _parse_date(match.group(1)) is not None):
            return True
    return False


def is_valid_user_code(code) -> bool:
    return isinstance(code, str) and USER_CODE_PATTERN.match(code) is not None
