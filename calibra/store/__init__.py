"""Off-ledger envelope storage backends."""

from .filesystem import FilesystemEnvelopeStore
from .http_client import HTTPEnvelopeStore
from .interface import EnvelopeStore, build_object_path

__all__ = ["EnvelopeStore", "FilesystemEnvelopeStore", "HTTPEnvelopeStore", "build_object_path"]
