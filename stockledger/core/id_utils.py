import uuid

import shortuuid


def generate_id() -> str:
    return str(uuid.uuid4())


def generate_short_token(length: int = 10) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_batch_number(prefix: str = "BATCH") -> str:
    return f"{prefix}-{generate_short_token().upper()}"
