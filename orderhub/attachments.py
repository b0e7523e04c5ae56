from collections.abc import Callable
from contextlib import AbstractContextManager
from dataclasses import dataclass
from posixpath import basename

from sqlalchemy.orm import Session

from orderhub.blobstore import BlobStore
from orderhub.config import settings
from orderhub.db import session_scope
from orderhub.errors import StorageError, TargetNotFound
from orderhub.logs import log_event
from orderhub.models import Order, OrderDocument, Product

ORDER_DOCUMENT = "order_document"
PRODUCT_DOCUMENT = "product_document"

PUBLIC_PREFIX = "public"


def public_key(file_path: str) -> str:
    return f"{PUBLIC_PREFIX}/{file_path}"


def public_url(file_path: str) -> str:
    return f"{settings.public_url_base.rstrip('/')}/{file_path}"


@dataclass(frozen=True)
class DocumentRecord:
    id: int
    order_id: int
    filename: str
    original_name: str
    file_path: str
    file_size: int
    mime_type: str
    uploaded_by: str

    @property
    def url(self) -> str:
        return public_url(self.file_path)


class AttachmentTargets:
    """Entity side of a completed upload: where finalized files get recorded."""

    def target_exists(self, target_type: str, target_id: int) -> bool:
        raise NotImplementedError

    def attach_order_document(
        self,
        order_id: int,
        finalized_path: str,
        original_name: str,
        byte_size: int,
        content_type: str,
        uploader_id: str,
    ) -> DocumentRecord:
        raise NotImplementedError

    def replace_product_document(self, product_id: int, finalized_path: str) -> None:
        raise NotImplementedError


class SqlAttachmentTargets(AttachmentTargets):
    def __init__(
        self,
        blobs: BlobStore,
        session_factory: Callable[[], AbstractContextManager[Session]] = session_scope,
    ) -> None:
        self.blobs = blobs
        self.session_factory = session_factory

    def target_exists(self, target_type: str, target_id: int) -> bool:
        model = Order if target_type == ORDER_DOCUMENT else Product
        with self.session_factory() as db:
            return db.get(model, target_id) is not None

    def attach_order_document(
        self,
        order_id: int,
        finalized_path: str,
        original_name: str,
        byte_size: int,
        content_type: str,
        uploader_id: str,
    ) -> DocumentRecord:
        with self.session_factory() as db:
            order = db.get(Order, order_id)
            if order is None:
                raise TargetNotFound(ORDER_DOCUMENT, order_id)
            document = OrderDocument(
                order_id=order.id,
                filename=basename(finalized_path),
                original_name=original_name,
                file_path=finalized_path,
                file_size=byte_size,
                mime_type=content_type,
                uploaded_by=uploader_id,
            )
            db.add(document)
            db.flush()
            return DocumentRecord(
                id=document.id,
                order_id=document.order_id,
                filename=document.filename,
                original_name=document.original_name,
                file_path=document.file_path,
                file_size=document.file_size,
                mime_type=document.mime_type,
                uploaded_by=document.uploaded_by,
            )

    def replace_product_document(self, product_id: int, finalized_path: str) -> None:
        with self.session_factory() as db:
            product = db.get(Product, product_id)
            if product is None:
                raise TargetNotFound(PRODUCT_DOCUMENT, product_id)
            previous = product.document
            product.document = finalized_path

        # Only drop the old file once the row no longer points at it.
        if previous and previous != finalized_path:
            try:
                self.blobs.delete(public_key(previous))
            except (OSError, StorageError) as exc:
                log_event(
                    {
                        "event": "product_document_delete_failed",
                        "product_id": product_id,
                        "file_path": previous,
                        "detail": str(exc),
                        "error_class": "storage_error",
                    }
                )
