"""FileRecord model - file/folder metadata (actual bytes live in the blob store)."""
import uuid
from sqlalchemy import String, BigInteger, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from filehub.models.base import Base, TimestampMixin, OwnerMixin

KIND_FILE = "file"
KIND_FOLDER = "folder"


def _new_id() -> str:
    return str(uuid.uuid4())


class FileRecord(Base, TimestampMixin, OwnerMixin):
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    kind: Mapped[str] = mapped_column(String(10), nullable=False, default=KIND_FILE)
    size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    mime_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    blob_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    url: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    # Weak reference: folders do not own their children
    parent_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    is_favorite: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    @property
    def is_file(self) -> bool:
        return self.kind == KIND_FILE

    @property
    def is_folder(self) -> bool:
        return self.kind == KIND_FOLDER

    def __repr__(self) -> str:
        return f"<FileRecord {self.id} {self.kind} {self.name!r} owner={self.owner_id}>"
