import time
import uuid


def now_ms() -> int:
    """Horodatage epoch en millisecondes (arrivées, confirmations, offres)."""
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def round_money(amount: float) -> float:
    return round(amount, 2)
