import re, unicodedata
from decimal import Decimal, InvalidOperation

CENTS = Decimal("0.01")


def _clean(s: str) -> str:
    # Unicode-normalize, strip “format” chars (incl. zero-width), trim spaces
    s = unicodedata.normalize("NFKC", s)
    s = "".join(ch for ch in s if unicodedata.category(ch) != "Cf")
    return s.strip()


def normalize_email(s: str) -> str:
    if not s:
        return ""
    s = _clean(s).lower()
    # Emails shouldn’t have spaces; collapse/remove any whitespace
    s = re.sub(r"\s+", "", s)
    return s


def normalize_credential(s: str) -> str:
    """Scanners sometimes append zero-width or trailing whitespace to QR payloads."""
    if not s:
        return ""
    return _clean(s)


def to_money(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"not a monetary amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"not a monetary amount: {value!r}")
    return amount.quantize(CENTS)
