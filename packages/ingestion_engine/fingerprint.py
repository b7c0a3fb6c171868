import hashlib


def compute_tx_hash(tx_date: str, description: str, amount: float, source_type: str) -> str:
    """
    Generates a deduplication fingerprint for a transaction.
    Format: SHA256({tx_date}|{description_normalized}|{amount:.2f}|{source_type})
    """
    normalized_description = (description or "").strip().lower()
    raw_string = f"{tx_date}|{normalized_description}|{amount:.2f}|{source_type}"
    return hashlib.sha256(raw_string.encode("utf-8")).hexdigest()


def compute_file_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()
