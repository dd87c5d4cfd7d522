"""Natural-key duplicate detection scoped to one import job run."""
from __future__ import annotations

import logging
from typing import Iterable

from bulk_ingest.schemas.import_record import NaturalKey
from bulk_ingest.services.object_repository import ObjectRepository

logger = logging.getLogger(__name__)


class DuplicateDetector:
    """Job-local cache of seen codes and tags, backed by store lookups.

    The cache only saves round-trips inside one streaming pass. The store's
    uniqueness constraints stay authoritative, so concurrent jobs racing on
    the same key surface later as persistence errors.
    """

    def __init__(self, repository: ObjectRepository | None = None, *, check_store: bool = True) -> None:
        # Rebound by the assembler to each batch's session.
        self.repository = repository
        self._check_store = check_store
        self._codes: set[str] = set()
        self._tags: set[str] = set()
        self._store_lookups = 0

    @property
    def store_lookups(self) -> int:
        return self._store_lookups

    def __len__(self) -> int:
        return len(self._codes)

    def _cached(self, key: NaturalKey) -> bool:
        return key.code in self._codes or key.tag in self._tags

    def _remember(self, key: NaturalKey) -> None:
        self._codes.add(key.code)
        self._tags.add(key.tag)

    def is_duplicate(self, key: NaturalKey) -> bool:
        """Return True when the code or tag was already seen in this job or in the store.

        The key is cached whatever the outcome, so a second occurrence of the
        same key in this job is always reported as a duplicate.
        """
        if self._cached(key):
            return True
        found = False
        if self._check_store:
            self._store_lookups += 1
            found = self.repository.exists(key)
        self._remember(key)
        return found

    def check_batch(self, keys: Iterable[NaturalKey]) -> list[bool]:
        """Classify keys in order with one store query for the whole batch.

        Equivalent to calling ``is_duplicate`` for each key in turn: the first
        occurrence of a key not present in the store is accepted, later
        occurrences are duplicates.
        """
        key_list = list(keys)
        stored_codes: set[str] = set()
        stored_tags: set[str] = set()
        if self._check_store:
            unseen = [key for key in key_list if not self._cached(key)]
            if unseen:
                self._store_lookups += 1
                stored_codes, stored_tags = self.repository.find_existing_keys(unseen)

        verdicts: list[bool] = []
        for key in key_list:
            if self._cached(key):
                verdicts.append(True)
                continue
            verdicts.append(key.code in stored_codes or key.tag in stored_tags)
            self._remember(key)
        return verdicts

