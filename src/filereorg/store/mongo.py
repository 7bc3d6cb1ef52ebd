"""MongoDB connection helpers."""

from __future__ import annotations

from dataclasses import dataclass

from pymongo import MongoClient
from pymongo.collection import Collection
from pymongo.database import Database

from filereorg.config import MongoConfig


def connect(config: MongoConfig) -> MongoClient:
    return MongoClient(config.uri, appname="filereorg")


@dataclass(slots=True)
class Collections:
    files: Collection
    audit: Collection
    locks: Collection

    @classmethod
    def from_database(cls, database: Database, config: MongoConfig) -> "Collections":
        return cls(
            files=database[config.files_collection],
            audit=database[config.audit_collection],
            locks=database[config.lock_collection],
        )
