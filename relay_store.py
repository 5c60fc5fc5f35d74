"""
relay_store.py — In-memory key pair / access token store for the relay.

One TokenRecord per generated key pair:
  - read_key   handed back to the requester to collect the token later.
  - write_key  doubles as the OAuth2 state value on the provider round-trip.
  - access_token  empty until the provider callback completes.

Records are kept in insertion order and searched linearly. A record is
deleted as soon as its access token has been read; records whose login
never completes stay in memory for the process lifetime.

All state is in-memory and ephemeral.
"""

import logging
import secrets
import string
import threading
import time
from dataclasses import dataclass, field

logger = logging.getLogger("relay-store")

KEY_LENGTH = 64
KEY_ALPHABET = string.ascii_lowercase + string.ascii_uppercase + string.digits


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RelayError(Exception):
    """Base class for store lookup failures."""


class AccessTokenUnavailable(RelayError):
    def __init__(self, message: str = "could not find AccessToken for given readKey"):
        super().__init__(message)


class RecordNotFound(AccessTokenUnavailable):
    """No record was issued for the read key (or it was already consumed)."""


class TokenNotReady(AccessTokenUnavailable):
    """The record exists but the provider callback has not delivered a token yet."""


class StateNotFound(RelayError):
    def __init__(self, message: str = "could not find state value for received token"):
        super().__init__(message)


class TokenNotFound(RelayError):
    def __init__(self, message: str = "could not find token in memory"):
        super().__init__(message)


# ---------------------------------------------------------------------------
# Key generation
# ---------------------------------------------------------------------------

def generate_key(length: int = KEY_LENGTH) -> str:
    """Return ``length`` characters drawn uniformly from [a-zA-Z0-9].

    Uses the ``secrets`` CSPRNG since the write key is the OAuth2 state.
    """
    return "".join(secrets.choice(KEY_ALPHABET) for _ in range(length))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

@dataclass
class TokenRecord:
    read_key: str
    write_key: str
    access_token: str = ""
    created_at: float = field(default_factory=time.time)


class TokenStore:
    """Insertion-ordered list of TokenRecords behind a single lock."""

    def __init__(self) -> None:
        self._records: list[TokenRecord] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def pending(self) -> int:
        """Number of records still waiting for a provider callback."""
        with self._lock:
            return sum(1 for r in self._records if not r.access_token)

    def create(self) -> TokenRecord:
        record = TokenRecord(
            read_key=generate_key(KEY_LENGTH),
            write_key=generate_key(KEY_LENGTH),
        )
        with self._lock:
            self._records.append(record)
            stored = len(self._records)
        logger.info("create: read=%s... stored=%d", record.read_key[:8], stored)
        return record

    def exists_by_write_key(self, write_key: str) -> bool:
        with self._lock:
            return any(r.write_key == write_key for r in self._records)

    def set_access_token_by_write_key(self, write_key: str, access_token: str) -> None:
        with self._lock:
            for record in self._records:
                if record.write_key == write_key:
                    record.access_token = access_token
                    return
        raise StateNotFound()

    def get_access_token_by_read_key(self, read_key: str) -> str:
        with self._lock:
            for record in self._records:
                if record.read_key == read_key:
                    if not record.access_token:
                        # key pair generated, login not completed yet
                        raise TokenNotReady()
                    return record.access_token
        raise RecordNotFound()

    def claim_by_read_key(self, read_key: str) -> TokenRecord:
        """Get and delete the granted record for ``read_key`` in one step.

        Raises the same errors as get_access_token_by_read_key; a pending
        record is left in place.
        """
        with self._lock:
            for i, record in enumerate(self._records):
                if record.read_key == read_key:
                    if not record.access_token:
                        raise TokenNotReady()
                    del self._records[i]
                    return record
        raise RecordNotFound()

    def remove_by_access_token(self, access_token: str) -> None:
        if not access_token:
            # an empty token means "not granted", never a match
            raise TokenNotFound()
        with self._lock:
            for i, record in enumerate(self._records):
                if record.access_token == access_token:
                    del self._records[i]
                    return
        raise TokenNotFound()
