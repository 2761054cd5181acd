"""Declarative base for primary store models"""
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
