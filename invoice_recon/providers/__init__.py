"""Adapters for the sheet, the mirror, the blob archive and the classifier."""
from invoice_recon.providers.blobs import BlobObject, S3BlobStore, quote_key
from invoice_recon.providers.classifier import DocumentClassifier
from invoice_recon.providers.mirror import SupabaseMirror, record_from_row, record_to_row
from invoice_recon.providers.sheets import SheetSource, build_header_map

__all__ = [
    "BlobObject",
    "DocumentClassifier",
    "S3BlobStore",
    "SheetSource",
    "SupabaseMirror",
    "build_header_map",
    "quote_key",
    "record_from_row",
    "record_to_row",
]
