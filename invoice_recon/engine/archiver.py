"""Copy original documents into their project folder under the invoice id."""
from __future__ import annotations

import logging
import posixpath
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Sequence, Set
from urllib.parse import unquote, urlparse

from invoice_recon.core.errors import ArchiveError, NotLocatableError
from invoice_recon.core.models import InvoiceRecord, RunSummary
from invoice_recon.core.utils import with_retries
from invoice_recon.engine.normalize import record_identity
from invoice_recon.providers.blobs import BlobObject, S3BlobStore

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (".pdf", ".jpg", ".jpeg", ".png", ".heic", ".webp", ".gif")
DEFAULT_EXTENSION = ".pdf"


@dataclass
class ArchiveResult:
    archived_link: str
    archived_id: str
    source_key: str
    copied: bool = True
    conflict: bool = False


class Archiver:
    """Locate a record's original document and file it under its project.

    Source resolution tries, in order: the explicit ``source_key``, probing
    ``{source_prefix}{identity}{ext}`` for common extensions, a key or
    extension parsed from the stored link, and finally the content hash
    against a one-off listing of the source prefix.
    """

    def __init__(
        self,
        blobs: S3BlobStore,
        source_prefix: str,
        projects_prefix: str,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.blobs = blobs
        self.source_prefix = source_prefix
        self.projects_prefix = projects_prefix
        self.extensions = tuple(extensions)
        self.attempts = attempts
        self.sleep = sleep
        self._hash_index: Optional[Dict[str, BlobObject]] = None

    def _retry(self, call, description: str):
        return with_retries(call, attempts=self.attempts, description=description, sleep=self.sleep)

    def _head(self, key: str) -> Optional[BlobObject]:
        return self._retry(lambda: self.blobs.head(key), f"head {key}")

    def destination_key(self, record: InvoiceRecord, extension: str = DEFAULT_EXTENSION) -> str:
        return f"{self.projects_prefix}{record.project_code}/{record.generated_invoice_id}{extension}"

    def archive(self, record: InvoiceRecord) -> ArchiveResult:
        if not record.generated_invoice_id or not record.project_code:
            raise ArchiveError(f"{record.label}: invoice id and project code are required to archive")

        source = self.resolve_source(record)
        extension = posixpath.splitext(source.key)[1].lower() or DEFAULT_EXTENSION
        destination = self.destination_key(record, extension)

        existing = self._head(destination)
        if existing is not None:
            if existing.etag and existing.etag == source.etag:
                logger.info("Archive for %s already in place at %s", record.label, destination)
                return ArchiveResult(self.blobs.public_url(destination), destination, source.key, copied=False)
            logger.warning(
                "Archive conflict for %s: %s exists with etag %s, source %s has %s; leaving it untouched",
                record.label,
                destination,
                existing.etag,
                source.key,
                source.etag,
            )
            return ArchiveResult(
                self.blobs.public_url(destination), destination, source.key, copied=False, conflict=True
            )

        self._retry(lambda: self.blobs.copy(source.key, destination), f"copy {source.key}")
        logger.info("Archived %s -> %s", source.key, destination)
        return ArchiveResult(self.blobs.public_url(destination), destination, source.key)

    def resolve_source(self, record: InvoiceRecord) -> BlobObject:
        """Find the original document or raise NotLocatableError."""

        if record.source_key:
            found = self._head(record.source_key)
            if found is None:
                raise NotLocatableError(f"{record.label}: source {record.source_key} no longer exists")
            return found

        identity = record_identity(record)
        if identity:
            for extension in self.extensions:
                found = self._head(f"{self.source_prefix}{identity}{extension}")
                if found is not None:
                    return found

        for key in self._keys_from_link(record.primary_file_link, identity):
            found = self._head(key)
            if found is not None:
                return found

        digest = record.content_hash.strip()
        if digest:
            found = self._by_hash(digest)
            if found is not None:
                return found

        raise NotLocatableError(f"{record.label}: original document not found under {self.source_prefix}")

    def _keys_from_link(self, link: str, identity: str) -> Iterable[str]:
        if not link:
            return []
        path = unquote(urlparse(link.strip()).path)
        keys = []
        marker = path.find(self.source_prefix)
        if marker >= 0:
            keys.append(path[marker:])
        extension = posixpath.splitext(path)[1].lower()
        if identity and extension and extension not in self.extensions:
            keys.append(f"{self.source_prefix}{identity}{extension}")
        return keys

    def _by_hash(self, digest: str) -> Optional[BlobObject]:
        if self._hash_index is None:
            self._hash_index = {}
            for blob in self._retry(lambda: list(self.blobs.list(self.source_prefix)), "list source prefix"):
                if blob.etag:
                    self._hash_index.setdefault(blob.etag, blob)
        return self._hash_index.get(digest)

    def content_hash_for(self, record: InvoiceRecord) -> str:
        """ETag of the record's original document, empty when it cannot be found."""

        try:
            return self.resolve_source(record).etag
        except NotLocatableError as exc:
            logger.warning("No content hash for %s: %s", record.label, exc)
            return ""

    def _referenced_keys(self, records: Iterable[InvoiceRecord]) -> Set[str]:
        referenced: Set[str] = set()
        base = self.blobs.public_url("")
        for record in records:
            if record.archived_file_id:
                referenced.add(record.archived_file_id)
            link = record.archived_file_link
            if link and link.startswith(base):
                referenced.add(unquote(link[len(base):]))
        return referenced

    def prune_orphans(self, records: Iterable[InvoiceRecord], dry_run: bool = True) -> RunSummary:
        """Delete project-folder objects no record points at."""

        summary = RunSummary(name="prune-orphans")
        referenced = self._referenced_keys(records)
        orphans = [
            blob.key
            for blob in self._retry(lambda: list(self.blobs.list(self.projects_prefix)), "list projects prefix")
            if blob.key not in referenced
        ]
        logger.info("Found %d orphaned archive objects", len(orphans))
        if dry_run:
            for key in orphans:
                summary.skip("delete-blob", key, "dry run")
            return summary

        deleted, failed = self.blobs.delete_many(orphans)
        for key in deleted:
            summary.ok("delete-blob", key)
        for key, reason in failed:
            summary.fail("delete-blob", key, reason)
        return summary
