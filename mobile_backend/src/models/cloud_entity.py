"""
CloudEntity model for client-defined records.

A CloudEntity is an arbitrary typed record stored on behalf of a mobile
client: a kind name, a client-chosen id and a flat document of properties.
Kinds whose name starts with ``[private]`` are stored in the owner's
namespace; all other kinds live in the shared namespace ("").

Design Rationale:
- The document is kept verbatim in ``properties`` so records round-trip
  exactly as the client sent them.
- Every indexable scalar is projected into ``cloud_entity_properties``
  (one row per value) so filters compile to plain SQL predicates instead
  of JSON path expressions that differ between PostgreSQL and SQLite.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import (
    Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from mobile_backend.src.models import Base
from mobile_backend.src.models.types import JSONBType


class CloudEntity(Base):
    """
    A client record of some kind.

    Attributes:
        id: Primary key
        kind_name: Client-defined kind (e.g. "Guestbook", "[private]Notes")
        entity_id: Client-chosen id, unique per namespace and kind
        namespace: "" for shared kinds, the owner id for private kinds
        owner: User id of the record owner (None when anonymous)
        properties: The record document as sent by the client
        created_at / updated_at: Write timestamps (UTC)
        created_by / updated_by: User ids of the writers
        indexed_properties: Queryable projection of ``properties``
    """

    __tablename__ = "cloud_entities"

    id = Column(Integer, primary_key=True, autoincrement=True)

    kind_name = Column(String(255), nullable=False)
    entity_id = Column(String(255), nullable=False)
    namespace = Column(String(255), nullable=False, default="")
    owner = Column(String(255), nullable=True)

    properties = Column(JSONBType, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)

    indexed_properties = relationship(
        "EntityProperty",
        back_populates="entity",
        cascade="all, delete-orphan",
        lazy="select",
    )

    __table_args__ = (
        UniqueConstraint(
            "namespace", "kind_name", "entity_id",
            name="uq_cloud_entities_namespace_kind_id",
        ),
        Index("ix_cloud_entities_namespace_kind", "namespace", "kind_name"),
    )

    def to_document(self) -> Dict[str, Any]:
        """Return the properties plus the system metadata fields."""
        document = dict(self.properties or {})
        document["_kindName"] = self.kind_name
        document["_createdAt"] = _epoch_millis(self.created_at)
        document["_updatedAt"] = _epoch_millis(self.updated_at)
        document["_createdBy"] = self.created_by
        document["_updatedBy"] = self.updated_by
        document["_owner"] = self.owner
        return document

    def __repr__(self) -> str:
        return (
            f"<CloudEntity(id={self.id}, kind='{self.kind_name}', "
            f"entity_id='{self.entity_id}', namespace='{self.namespace}')>"
        )


class EntityProperty(Base):
    """
    One indexed value of a CloudEntity property.

    Exactly one of the typed value columns is meaningful for a given row,
    except for date-like strings which keep the text in ``str_value`` and
    their epoch milliseconds in ``num_value``. List properties produce one
    row per element; nested documents are not indexed.
    """

    __tablename__ = "cloud_entity_properties"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_pk = Column(
        Integer,
        ForeignKey("cloud_entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    str_value = Column(Text, nullable=True)
    num_value = Column(Float, nullable=True)
    bool_value = Column(Boolean, nullable=True)

    entity = relationship("CloudEntity", back_populates="indexed_properties")

    __table_args__ = (
        Index("ix_entity_properties_name_num", "name", "num_value"),
        Index("ix_entity_properties_name_bool", "name", "bool_value"),
    )

    def __repr__(self) -> str:
        return f"<EntityProperty(entity_pk={self.entity_pk}, name='{self.name}')>"


def _epoch_millis(value: datetime):
    if value is None:
        return None
    return int((value - datetime(1970, 1, 1)).total_seconds() * 1000)
