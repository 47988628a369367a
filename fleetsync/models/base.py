"""Declarative base shared by all fleetsync models."""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
