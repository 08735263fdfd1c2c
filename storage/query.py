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

"""Query predicates for document collections.

A query maps field names to either a literal (equality) or an operator
mapping such as ``{"vol": {"$gte": 60}}``. All fields must match.

Matching rules:
- A field missing from the document never matches, not even ``$ne``
- Unknown operators fail closed (the document does not match)
- Comparisons between incomparable types fail closed instead of raising
- ``$in`` needs a list, tuple or set operand
"""

import operator
from collections.abc import Mapping
from typing import Any, Callable

from storage.errors import InvalidQueryError

ID_FIELD = "_id"


def _in(value: Any, operand: Any) -> bool:
    if not isinstance(operand, (list, tuple, set, frozenset)):
        return False
    return value in operand


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$gt": operator.gt,
    "$gte": operator.ge,
    "$lt": operator.lt,
    "$lte": operator.le,
    "$ne": operator.ne,
    "$in": _in,
}


def normalize_query(query: Mapping | None) -> Mapping:
    """Return the query as a mapping, treating None as match-all.

    Raises:
        InvalidQueryError: If the query is not a mapping
    """
    if query is None:
        return {}
    if not isinstance(query, Mapping):
        raise InvalidQueryError(f"query must be a mapping, got {type(query).__name__}")
    return query


def is_hashable(value: Any) -> bool:
    """Check whether a value can be used as an index key."""
    try:
        hash(value)
    except TypeError:
        return False
    return True


def index_lookup(query: Mapping) -> tuple[str, Any] | None:
    """Return (field, value) when the query can be answered from an index.

    Only single-field equality queries on hashable literals qualify.
    Anything else needs a full scan.
    """
    if len(query) != 1:
        return None
    field, value = next(iter(query.items()))
    if isinstance(value, Mapping) or not is_hashable(value):
        return None
    return field, value


def match_condition(value: Any, condition: Any) -> bool:
    """Evaluate one field's condition against the document's value."""
    if not isinstance(condition, Mapping):
        return value == condition

    for op, operand in condition.items():
        check = OPERATORS.get(op)
        if check is None:
            return False
        try:
            if not check(value, operand):
                return False
        except TypeError:
            return False
    return True


def match_document(doc: Mapping, query: Mapping) -> bool:
    """Check a document against every field of the query."""
    for field, condition in query.items():
        if field not in doc:
            return False
        if not match_condition(doc[field], condition):
            return False
    return True
