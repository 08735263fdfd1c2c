# Copyright (C) 2026 grodz
#
# This file is part of Aquabot.
#
# Aquabot is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Embedded JSON document store.

Collections of dict documents kept in memory, indexed by field value, and
written back to one JSON file per collection after a short debounce.
"""

from storage.collection import BulkWriteResult, ChangeEvent, Collection, generate_id
from storage.errors import DuplicateIdError, InvalidQueryError, StoreError
from storage.store import Store

__all__ = [
    "BulkWriteResult",
    "ChangeEvent",
    "Collection",
    "DuplicateIdError",
    "InvalidQueryError",
    "Store",
    "StoreError",
    "generate_id",
]
