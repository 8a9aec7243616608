"""Resolve target records into decrypted connection configs, with a TTL cache."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Tuple

from . import CONFIG_CACHE_TTL, CONNECTION_TIMEOUT
from .exceptions import CredentialError, TargetGoneError
from .models import AuthMethod, ConnectionConfig, TargetRecord
from .repository import Decryptor, TargetRepository
from .types import Clock

logger = logging.getLogger("fleet_ssh_tools.credentials")


class ConnectionConfigResolver:
    """Builds ``ConnectionConfig`` objects from stored targets.

    Decrypted configs are cached per target for ``ttl`` seconds. Callers must
    ``invalidate`` after credential rotation or fingerprint changes.
    """

    def __init__(
        self,
        targets: TargetRepository,
        decryptor: Decryptor,
        ttl: float = CONFIG_CACHE_TTL,
        timeout: float = CONNECTION_TIMEOUT,
        clock: Clock = time.monotonic,
    ) -> None:
        self.targets = targets
        self.decryptor = decryptor
        self.ttl = ttl
        self.timeout = timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: Dict[str, Tuple[ConnectionConfig, float]] = {}
        self._generations: Dict[str, int] = {}
        self._epoch = 0

    def resolve(self, target_id: str) -> ConnectionConfig:
        """Return the (possibly cached) config for *target_id*.

        Raises:
            TargetGoneError: If the target no longer exists
            CredentialError: If the auth material is missing or cannot be decrypted
        """
        now = self._clock()
        with self._lock:
            cached = self._cache.get(target_id)
            if cached is not None and cached[1] > now:
                return cached[0]
            generation = (self._epoch, self._generations.get(target_id, 0))

        target = self.targets.get(target_id)
        if target is None:
            raise TargetGoneError(f"Target {target_id} not found", target_id=target_id)

        config = self.build(target)
        with self._lock:
            if (self._epoch, self._generations.get(target_id, 0)) != generation:
                # invalidated while building; serve this config but do not cache it
                return config
            self._cache[target_id] = (config, now + self.ttl)
        logger.debug("[CONFIG] Cached connection config for target %s (%s)", target_id, config.address)
        return config

    def build(self, target: TargetRecord) -> ConnectionConfig:
        """Decrypt *target*'s auth material into a fresh, uncached config."""
        material = target.auth_material
        private_key: Optional[str] = None
        passphrase: Optional[str] = None
        password: Optional[str] = None

        if target.auth_method is AuthMethod.PASSWORD:
            password = self._decrypt(target, material.encrypted_password, "password")
        else:
            private_key = self._decrypt(target, material.encrypted_private_key, "private key")
            if target.auth_method is AuthMethod.KEY_WITH_PASSPHRASE:
                passphrase = self._decrypt(target, material.encrypted_passphrase, "passphrase")

        return ConnectionConfig(
            host=target.host,
            port=target.port,
            username=target.username,
            auth_method=target.auth_method,
            private_key=private_key,
            passphrase=passphrase,
            password=password,
            timeout=self.timeout,
            host_key_policy=target.host_key_policy,
            known_fingerprints=tuple(fp.fingerprint for fp in target.known_fingerprints),
        )

    def decrypt_sudo_password(self, target: TargetRecord) -> Optional[str]:
        if target.encrypted_sudo_password is None:
            return None
        return self._decrypt(target, target.encrypted_sudo_password, "sudo password")

    def _decrypt(self, target: TargetRecord, ciphertext: Optional[str], what: str) -> str:
        if not ciphertext:
            raise CredentialError(f"Target {target.id} ({target.name}) has no {what} configured")
        try:
            return self.decryptor.decrypt(ciphertext)
        except CredentialError:
            raise
        except Exception as exc:
            raise CredentialError(f"Unable to decrypt {what} for target {target.id}: {exc}") from exc

    def invalidate(self, target_id: str) -> None:
        with self._lock:
            dropped = self._cache.pop(target_id, None)
            self._generations[target_id] = self._generations.get(target_id, 0) + 1
        if dropped is not None:
            logger.debug("[CONFIG] Invalidated cached config for target %s", target_id)

    def clear(self) -> None:
        with self._lock:
            self._epoch += 1
            self._cache.clear()
