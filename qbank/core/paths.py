"""Materialized path helpers.

A path lists the ids from the root down to the node itself, each followed by
a slash: a root with id 1 has path ``/1/`` and its child 4 has ``/1/4/``.
Every path is a prefix of the paths of all nodes in its subtree.
"""

SEPARATOR = "/"


def root_path(node_id: int) -> str:
    """Path of a node without parent."""
    return f"{SEPARATOR}{node_id}{SEPARATOR}"


def child_path(parent_path: str, node_id: int) -> str:
    """Path of ``node_id`` placed directly under a node with ``parent_path``."""
    return f"{parent_path}{node_id}{SEPARATOR}"


def build_path(parent_path: str | None, node_id: int) -> str:
    if parent_path is None:
        return root_path(node_id)
    return child_path(parent_path, node_id)


def parse_path(path: str) -> list[int]:
    """Split a path into ids, root first.

    Raises:
        ValueError: If the path is not of the form ``/id/id/``
    """
    if not path.startswith(SEPARATOR) or not path.endswith(SEPARATOR) or len(path) < 3:
        raise ValueError(f"Malformed materialized path: {path!r}")
    segments = path[1:-1].split(SEPARATOR)
    try:
        return [int(segment) for segment in segments]
    except ValueError as e:
        raise ValueError(f"Malformed materialized path: {path!r}") from e


def is_valid_path(path: str) -> bool:
    try:
        parse_path(path)
    except ValueError:
        return False
    return True


def depth_of(path: str) -> int:
    """Depth encoded by a path (segment count - 1)."""
    return len(parse_path(path)) - 1


def ancestor_ids(path: str) -> list[int]:
    """Ids of the proper ancestors encoded by a path, root first."""
    return parse_path(path)[:-1]


def rebase(path: str, old_prefix: str, new_prefix: str) -> str:
    """Swap the leading ``old_prefix`` of ``path`` for ``new_prefix``.

    Raises:
        ValueError: If ``path`` is not inside the subtree of ``old_prefix``
    """
    if not path.startswith(old_prefix):
        raise ValueError(f"{path!r} is not under {old_prefix!r}")
    return new_prefix + path[len(old_prefix):]


def prefixes_overlap(first: str, second: str) -> bool:
    """True when one subtree contains the other."""
    return first.startswith(second) or second.startswith(first)


def parent_path(path: str) -> str | None:
    """Path of the parent encoded in ``path``; ``None`` for a root."""
    ids = parse_path(path)
    if len(ids) == 1:
        return None
    return SEPARATOR + SEPARATOR.join(str(i) for i in ids[:-1]) + SEPARATOR
