"""
Deterministic client bucketing

Maps a client identifier to a bucket in [0, 100). The mapping uses a digest
rather than the builtin ``hash`` (which is reseeded per process), so every
instance of the router puts a given client in the same bucket.
"""
import hashlib

from .exceptions import InvalidInput

BUCKET_COUNT = 100


def bucket_of(client_id: str, salt: str = "") -> int:
    """
    Compute the stable bucket for a client

    Args:
        client_id: Opaque, non-empty client identifier
        salt: Optional namespace; changing it reshuffles every client

    Returns:
        Integer bucket in [0, 100)

    Raises:
        InvalidInput: If client_id is empty or not a string
    """
    if not isinstance(client_id, str) or not client_id:
        raise InvalidInput("client_id must be a non-empty string")

    hash_input = f"{salt}:{client_id}".encode('utf-8')
    hash_value = int(hashlib.md5(hash_input).hexdigest(), 16)

    return hash_value % BUCKET_COUNT


def in_rollout(bucket: int, percentage: int) -> bool:
    """A bucket joins the candidate cohort when it sits below the percentage"""
    return bucket < percentage
