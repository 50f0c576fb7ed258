from __future__ import annotations
import re
import uuid

# public class Foo / public final class Foo
_JAVA_PUBLIC_CLASS = re.compile(r"public\s+(?:(?:final|abstract|strictfp)\s+)*class\s+([A-Za-z_$][\w$]*)")


def new_request_id() -> str:
    return uuid.uuid4().hex


def extract_entry_point(source: str, default: str = "Main") -> str:
    """
    Name of the first public class in the source, or `default` if there is none.
    The result only holds identifier characters, so it is safe to use in a path.
    """
    m = _JAVA_PUBLIC_CLASS.search(source)
    return m.group(1) if m else default
