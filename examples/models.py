"""Minimal models for sqla-graphs examples."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy import orm

from sqla_graphs import add_conditions, order_by


class Base(orm.DeclarativeBase):
    pass


# ``position`` is surfaced on loaded tags and written when a tag is related
book_tags = sa.Table(
    "book_tags",
    Base.metadata,
    sa.Column("book_id", sa.Integer, sa.ForeignKey("books.id"), primary_key=True),
    sa.Column("tag_id", sa.Integer, sa.ForeignKey("tags.id"), primary_key=True),
    sa.Column("position", sa.Integer, nullable=True),
)


class Author(Base):
    __tablename__ = "authors"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))

    books: orm.Mapped[list[Book]] = orm.relationship(back_populates="author", lazy="noload")
    bio: orm.Mapped[Biography | None] = orm.relationship(uselist=False, back_populates="author", lazy="noload")


class Biography(Base):
    __tablename__ = "biographies"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    text: orm.Mapped[str] = orm.mapped_column(sa.Text, default="")
    author_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("authors.id"), unique=True)

    author: orm.Mapped[Author | None] = orm.relationship(back_populates="bio", lazy="noload")


class Book(Base):
    __tablename__ = "books"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    title: orm.Mapped[str] = orm.mapped_column(sa.String(200))
    published: orm.Mapped[int | None] = orm.mapped_column(nullable=True)
    author_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("authors.id"))
    genre_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("genres.id"))

    author: orm.Mapped[Author | None] = orm.relationship(back_populates="books", lazy="noload")
    genre: orm.Mapped[Genre | None] = orm.relationship(lazy="noload")
    reviews: orm.Mapped[list[Review]] = orm.relationship(back_populates="book", lazy="noload")
    tags: orm.Mapped[list[Tag]] = orm.relationship(
        secondary=book_tags, lazy="noload", info={"extra": ("position",)}
    )


class Review(Base):
    __tablename__ = "reviews"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    stars: orm.Mapped[int] = orm.mapped_column(default=0)
    book_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("books.id"))

    book: orm.Mapped[Book | None] = orm.relationship(back_populates="reviews", lazy="noload")


class Tag(Base):
    __tablename__ = "tags"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    label: orm.Mapped[str] = orm.mapped_column(sa.String(50), unique=True)


class Genre(Base):
    __tablename__ = "genres"

    id: orm.Mapped[int] = orm.mapped_column(primary_key=True)
    name: orm.Mapped[str] = orm.mapped_column(sa.String(100))
    parent_id: orm.Mapped[int | None] = orm.mapped_column(sa.ForeignKey("genres.id"))

    parent: orm.Mapped[Genre | None] = orm.relationship(
        back_populates="subgenres", remote_side=[id], lazy="noload"
    )
    subgenres: orm.Mapped[list[Genre]] = orm.relationship(back_populates="parent", lazy="noload")


Book.__graph_modifiers__ = {  # type: ignore[attr-defined]
    "recent": add_conditions(Book.__table__.c.published >= 2000),
    "by_title": order_by(Book.__table__.c.title),
}
Review.__graph_modifiers__ = {  # type: ignore[attr-defined]
    "positive": add_conditions(Review.__table__.c.stars >= 4),
}
