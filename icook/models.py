from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from .db import Base


def utcnow():
    return datetime.now(timezone.utc)


class Source(Base):
    __tablename__ = "sources"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    is_personal = Column(Boolean, nullable=False, default=True)
    owner = Column(String(100), nullable=False, default="")
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    categories = relationship(
        "Category", back_populates="source", cascade="all, delete-orphan"
    )
    tags = relationship("Tag", back_populates="source", cascade="all, delete-orphan")


class Category(Base):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("source_id", "name", name="uq_category_source_name"),)
    id = Column(Integer, primary_key=True, index=True)
    source_id = Column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(100), nullable=False, index=True)
    icon = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    source = relationship("Source", back_populates="categories")
    recipes = relationship(
        "Recipe", back_populates="category", cascade="all, delete-orphan"
    )


class Recipe(Base):
    __tablename__ = "recipes"
    id = Column(Integer, primary_key=True, index=True)
    # Always equal to the category's source_id
    source_id = Column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    category_id = Column(
        Integer, ForeignKey("categories.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(150), nullable=False, index=True)
    recipe_time = Column(Integer, nullable=True)  # minutes
    details = Column(Text, nullable=True)  # markdown
    image = Column(String(500), nullable=True)  # path or URL
    ingredients = Column(Text, nullable=True)  # JSON-encoded list
    steps = Column(Text, nullable=True)  # JSON-encoded list of steps
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    category = relationship("Category", back_populates="recipes")


class Tag(Base):
    __tablename__ = "tags"
    id = Column(Integer, primary_key=True, index=True)
    source_id = Column(
        Integer, ForeignKey("sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_modified = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    source = relationship("Source", back_populates="tags")
