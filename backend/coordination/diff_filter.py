"""Path-exact filtering of unified diffs.

A file section starts at its ``diff --git a/<old> b/<new>`` header and runs
until the next header. A section is kept when its destination path
(``<new>``) equals one of the requested paths. Paths are compared whole,
so ``src/foo.ts`` never selects ``src/foo.tsx``.
"""

DIFF_HEADER_PREFIX = "diff --git "

NO_DIFF_CONTENT = "(no diff content available)"
NO_MATCHING_DIFF = "(no matching diff content for assigned files)"

_C_ESCAPES = {"n": "\n", "t": "\t", '"': '"', "\\": "\\", "a": "\a", "b": "\b", "f": "\f", "r": "\r", "v": "\v"}


def _unquote(path: str) -> str:
    """Decode a C-style quoted git path (without its surrounding quotes)."""
    out = bytearray()
    i = 0
    while i < len(path):
        char = path[i]
        if char != "\\" or i + 1 == len(path):
            out.extend(char.encode("utf-8"))
            i += 1
            continue
        nxt = path[i + 1]
        if nxt in "01234567":
            octal = path[i + 1 : i + 4]
            out.append(int(octal, 8) & 0xFF)
            i += 1 + len(octal)
        else:
            out.extend(_C_ESCAPES.get(nxt, nxt).encode("utf-8"))
            i += 2
    return out.decode("utf-8", errors="replace")


def destination_path(header: str) -> str | None:
    """Extract the ``b/`` path from a ``diff --git`` header line.

    Returns:
        The destination path, or None if the line is not a parseable header.
    """
    if not header.startswith(DIFF_HEADER_PREFIX):
        return None
    rest = header[len(DIFF_HEADER_PREFIX) :].rstrip("\r")

    # Paths with special characters are quoted: "a/x" "b/x"
    if rest.endswith('"'):
        start = rest.rfind(' "b/')
        if start == -1:
            return None
        return _unquote(rest[start + 2 : -1])[2:]

    # Unchanged path: "a/X b/X". Splitting at the middle also handles
    # paths that themselves contain " b/".
    if len(rest) % 2 == 1:
        half = len(rest) // 2
        old, new = rest[:half], rest[half + 1 :]
        if old.startswith("a/") and new.startswith("b/") and old[2:] == new[2:]:
            return new[2:]

    # Renamed path
    start = rest.rfind(" b/")
    if start == -1:
        return None
    return rest[start + 3 :]


def _normalize(path: str) -> str:
    return path[2:] if path.startswith("./") else path


def filter_diff_for_files(diff_content: str, files: list[str]) -> str:
    """Keep only the diff sections whose destination path is in ``files``.

    Args:
        diff_content: Full unified diff
        files: Repository-relative paths to keep

    Returns:
        The matching sections joined in their original order, or a
        placeholder when the diff is empty or nothing matches.
    """
    if not diff_content.strip():
        return NO_DIFF_CONTENT

    wanted = {_normalize(f) for f in files}
    kept: list[str] = []
    include = False
    for line in diff_content.split("\n"):
        if line.startswith(DIFF_HEADER_PREFIX):
            include = destination_path(line) in wanted
        if include:
            kept.append(line)

    # Drop the empty tail left by a trailing newline
    while kept and not kept[-1]:
        kept.pop()
    return "\n".join(kept) if kept else NO_MATCHING_DIFF
