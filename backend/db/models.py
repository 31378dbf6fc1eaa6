from datetime import datetime
from sqlalchemy import (
    Column, Integer, Text, DateTime, Index, UniqueConstraint,
)
from db.database import Base


class StoredDocument(Base):
    __tablename__ = "stored_documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(Text, nullable=False)  # habit | history | users | guardian_links
    doc_id = Column(Text, nullable=False)
    data_json = Column(Text, nullable=False, default="{}")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uq_stored_documents_collection_doc"),
        Index("ix_stored_documents_collection", "collection"),
    )
