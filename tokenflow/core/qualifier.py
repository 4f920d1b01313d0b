# Qualifier for TokenFlow Engine
# Structured path names addressing models, items and objects inside items

from dataclasses import dataclass, replace
from typing import Optional, Tuple

from .errors import QualifierParseError

# Delimiters
PATH_DELIMITER = "/"
TYPE_DELIMITER = ":"
OBJECT_DELIMITER = "."
ESCAPE_CHAR = "\\"

_ITEM_SPECIAL_CHARS = (ESCAPE_CHAR, OBJECT_DELIMITER, TYPE_DELIMITER, PATH_DELIMITER)


def _trim_null(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _find_unescaped(s: str, ch: str, start: int) -> int:
    """Return the index of the first unescaped ``ch`` at or after ``start``, or -1."""
    i = start
    while i < len(s):
        c = s[i]
        if c == ESCAPE_CHAR:
            i += 2
            continue
        if c == ch:
            return i
        i += 1
    return -1


def _unescape(s: str) -> str:
    out = []
    i = 0
    while i < len(s):
        if s[i] == ESCAPE_CHAR and i + 1 < len(s):
            out.append(s[i + 1])
            i += 2
            continue
        out.append(s[i])
        i += 1
    return "".join(out)


def _escape(s: str) -> str:
    for ch in _ITEM_SPECIAL_CHARS:
        s = s.replace(ch, ESCAPE_CHAR + ch)
    return s


@dataclass(frozen=True)
class Qualifier:
    """
    Immutable path name of the form ``[/model/][ItemType:]item[.objectPath]``.

    The object path addresses objects inside the item, e.g. a step and
    one of its ports (``Step.Port``) or a parameter (``Step.Port.Param``).

    Example:
        q = Qualifier.parse("/Sales/Process:Order.Approve.In")
        q.model        # "Sales"
        q.item_type    # "Process"
        q.item         # "Order"
        q.object_path  # "Approve.In"
    """

    model: Optional[str] = None
    item: Optional[str] = None
    item_type: Optional[str] = None
    object_path: Optional[str] = None

    # ==================== Parsing ====================

    @classmethod
    def parse(cls, s: Optional[str]) -> "Qualifier":
        """
        Parse a qualifier string.

        Args:
            s: Qualifier string; None or "" yields the empty qualifier

        Returns:
            The parsed qualifier

        Raises:
            QualifierParseError: If the string violates the qualifier grammar
        """
        if s is None:
            return cls()
        if not isinstance(s, str):
            raise QualifierParseError(
                message=f"Qualifier must be a string, got {type(s).__name__}"
            )

        model = item = item_type = object_path = None
        index = 0

        if s.startswith(PATH_DELIMITER):
            end = s.find(PATH_DELIMITER, 1)
            if end > 0:
                model = s[1:end]
                index = end + 1
            else:
                model = s[1:]
                index = len(s)

        if _find_unescaped(s, PATH_DELIMITER, index) >= 0:
            raise QualifierParseError(
                message=f"Qualifier '{s}' contains more than two path delimiters"
            )

        type_index = _find_unescaped(s, TYPE_DELIMITER, index)
        dot_index = _find_unescaped(s, OBJECT_DELIMITER, index)
        if type_index >= 0 and (dot_index < 0 or type_index < dot_index):
            item_type = s[index:type_index]
            index = type_index + 1
            dot_index = _find_unescaped(s, OBJECT_DELIMITER, index)

        if dot_index != index:
            if dot_index > 0:
                item = _unescape(s[index:dot_index])
                index = dot_index
            else:
                item = _unescape(s[index:])
                index = len(s)

        if index < len(s) and s[index] == OBJECT_DELIMITER:
            object_path = s[index + 1:]
            if object_path and any(
                not segment.strip() for segment in object_path.split(OBJECT_DELIMITER)
            ):
                raise QualifierParseError(
                    message=f"Qualifier '{s}' contains an empty object path segment"
                )

        return cls(
            model=_trim_null(model),
            item=_trim_null(item),
            item_type=_trim_null(item_type),
            object_path=_trim_null(object_path),
        )

    # ==================== String Representation ====================

    def to_string(self, typed: bool = True) -> str:
        """
        Build the canonical string form.

        Args:
            typed: Whether to include the item type

        Returns:
            Canonical qualifier string
        """
        parts = []
        show_type = typed and self.item_type is not None
        if self.model is not None:
            parts.append(PATH_DELIMITER + self.model)
            if show_type or self.item is not None or self.object_path is not None:
                parts.append(PATH_DELIMITER)
        if show_type:
            parts.append(self.item_type + TYPE_DELIMITER)
        if self.item is not None:
            parts.append(_escape(self.item))
        if self.object_path is not None:
            parts.append(OBJECT_DELIMITER + self.object_path)
        return "".join(parts)

    def __str__(self) -> str:
        return self.to_string(typed=True)

    # ==================== Builders ====================

    def with_model(self, model: Optional[str]) -> "Qualifier":
        return replace(self, model=_trim_null(model))

    def with_item(self, item: Optional[str]) -> "Qualifier":
        return replace(self, item=_trim_null(item))

    def with_item_type(self, item_type: Optional[str]) -> "Qualifier":
        return replace(self, item_type=_trim_null(item_type))

    def with_object_path(self, object_path: Optional[str]) -> "Qualifier":
        return replace(self, object_path=_trim_null(object_path))

    def append_object_path(self, *segments: str) -> "Qualifier":
        """Append segments to the object path, e.g. a port below a step."""
        current = [self.object_path] if self.object_path else []
        return self.with_object_path(OBJECT_DELIMITER.join(current + list(segments)))

    def item_qualifier(self) -> "Qualifier":
        """Model and item only; used as the cache key of a process."""
        return Qualifier(model=self.model, item=self.item)

    # ==================== Accessors ====================

    @property
    def object_path_segments(self) -> Tuple[str, ...]:
        if not self.object_path:
            return ()
        return tuple(self.object_path.split(OBJECT_DELIMITER))

    def is_empty(self) -> bool:
        return (
            self.model is None
            and self.item is None
            and self.item_type is None
            and self.object_path is None
        )

    def matches(self, other: "Qualifier") -> bool:
        """Compare two qualifiers ignoring the item type."""
        return (
            self.model == other.model
            and self.item == other.item
            and self.object_path == other.object_path
        )


def join_path(*segments: str) -> str:
    """Join object path segments with the object delimiter."""
    return OBJECT_DELIMITER.join(segment for segment in segments if segment)


def as_qualifier(value) -> Qualifier:
    """Accept a Qualifier or parse a qualifier string."""
    if isinstance(value, Qualifier):
        return value
    return Qualifier.parse(value)
