import secrets


def generate_id(prefix: str) -> str:
    """Generate a unique prefixed identifier, e.g. ``rfr_x8Yq...``."""
    return f"{prefix}_{secrets.token_urlsafe(16)}"


def format_document(document: dict) -> dict:
    """Strip the MongoDB ``_id`` from a stored document."""
    if document and "_id" in document:
        del document["_id"]
    return document


def round_money(amount: float) -> float:
    """Round a money amount to two decimals."""
    return round(float(amount), 2)
