import datetime
import re

# Solana address: base58, 32..44 chars, decodes to a 32 byte public key
ADDRESS_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
ADDRESS_BYTES = 32

ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
INDEX = {c: i for i, c in enumerate(ALPHABET)}

TITLE_MAX = 100
CANDIDATE_NAME_MAX = 100
MANIFESTO_MAX = 1000


def b58decode(s: str) -> bytes:
    if not isinstance(s, str) or not s:
        raise ValueError("empty base58 string")
    n = 0
    for ch in s:
        if ch not in INDEX:
            raise ValueError(f"invalid base58 char: {ch}")
        n = n * 58 + INDEX[ch]
    b = n.to_bytes((n.bit_length() + 7) // 8, "big") if n > 0 else b""
    # leading '1's are leading zero bytes
    pad = len(s) - len(s.lstrip("1"))
    return b"\x00" * pad + b


def is_valid_address(address) -> bool:
    if not isinstance(address, str) or not ADDRESS_RE.match(address):
        return False
    return len(b58decode(address)) == ADDRESS_BYTES


def decode_address(address: str) -> bytes:
    if not isinstance(address, str) or not ADDRESS_RE.match(address):
        raise ValueError(f"not a valid address: {address!r}")
    raw = b58decode(address)
    if len(raw) != ADDRESS_BYTES:
        raise ValueError(f"address decodes to {len(raw)} bytes, expected {ADDRESS_BYTES}")
    return raw


def parse_iso_datetime(value):
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValueError("datetime must be an ISO-8601 string")
    dt = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return dt


def validate_election_payload(data: dict):
    """Returns (clean_doc, None) or (None, error message)."""
    title = data.get("title")
    title = title.strip() if isinstance(title, str) else ""
    if not title or len(title) > TITLE_MAX:
        return None, f"title must be 1-{TITLE_MAX} characters"

    candidates = data.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None, "at least one candidate required"
    clean_candidates = []
    seen = set()
    for c in candidates:
        if not isinstance(c, dict):
            return None, "candidate must be an object"
        name = c.get("name")
        name = name.strip() if isinstance(name, str) else ""
        if not name or len(name) > CANDIDATE_NAME_MAX:
            return None, f"candidate name must be 1-{CANDIDATE_NAME_MAX} characters"
        if name in seen:
            return None, f"duplicate candidate name: {name}"
        seen.add(name)
        manifesto = c.get("manifesto") or ""
        if not isinstance(manifesto, str) or len(manifesto) > MANIFESTO_MAX:
            return None, f"manifesto must be at most {MANIFESTO_MAX} characters"
        picture = c.get("picture")
        if picture is not None and not isinstance(picture, str):
            return None, "picture must be a string or null"
        clean_candidates.append({"name": name, "picture": picture, "manifesto": manifesto})

    is_private = data.get("is_private", False)
    if not isinstance(is_private, bool):
        return None, "is_private must be a boolean"

    try:
        start = parse_iso_datetime(data.get("start_time"))
        end = parse_iso_datetime(data.get("end_time"))
    except ValueError as e:
        return None, f"invalid time window: {e}"
    if start and end and end <= start:
        return None, "end_time must be after start_time"

    return {
        "title": title,
        "candidates": clean_candidates,
        "is_private": is_private,
        "start_time": start.isoformat() if start else None,
        "end_time": end.isoformat() if end else None,
    }, None
