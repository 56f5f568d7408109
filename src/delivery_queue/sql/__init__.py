# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Async SQL layer: adapters, column definitions and table managers."""

from .base import DbAdapter
from .column import Column, Columns, Integer, String
from .sqldb import SqlDb, create_adapter
from .sqlite import SqliteAdapter
from .table import Table

__all__ = [
    "Column",
    "Columns",
    "DbAdapter",
    "Integer",
    "SqlDb",
    "SqliteAdapter",
    "String",
    "Table",
    "create_adapter",
]
