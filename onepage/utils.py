from __future__ import annotations

import hashlib


def hash_data(data: bytes | str) -> str:
    return hashlib.sha1(data if isinstance(data, bytes) else data.encode()).hexdigest()


def short_hash(data: bytes | str) -> str:
    return hash_data(data)[:8]
