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

"""Exceptions raised by the document store."""


class StoreError(Exception):
    """Base class for document store errors."""


class DuplicateIdError(StoreError):
    """Raised when an insert would reuse an existing document _id."""

    def __init__(self, doc_id) -> None:
        super().__init__(f"duplicate _id: {doc_id!r}")
        self.doc_id = doc_id


class InvalidQueryError(StoreError, ValueError):
    """Raised for malformed queries, patches, documents or bulk operations."""
