"""Import all models so SQLAlchemy metadata knows about them."""
from filehub.models.base import Base
from filehub.models.file_record import FileRecord
from filehub.models.subscription import Subscription

__all__ = ["Base", "FileRecord", "Subscription"]
