"""Build context packing: ignore rules, tar stream, Dockerfile path handling."""

from __future__ import annotations

import fnmatch
import io
import os
import posixpath
import re
import tarfile
from pathlib import Path

BUILTIN_IGNORES: tuple[str, ...] = (".git", "node_modules", "dist", "build")


def _compile_anchored(pattern: str) -> re.Pattern[str]:
    """Translate a root-anchored glob; ``*`` and ``?`` stop at ``/``, ``**`` crosses directories."""
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "*":
            if pattern.startswith("**/", i):
                out.append("(?:.*/)?")
                i += 3
                continue
            if pattern.startswith("**", i):
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif c == "?":
            out.append("[^/]")
        elif c == "[":
            end = pattern.find("]", i + 2)
            if end == -1:
                out.append(re.escape(c))
            else:
                body = pattern[i + 1:end].replace("\\", "\\\\")
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out))


class IgnoreRules:
    """Gitignore-style matcher used to filter the build context.

    Patterns without a slash match any path component; patterns with a
    slash are anchored at the context root. ``!pattern`` re-includes, and
    the last matching pattern wins.
    """

    def __init__(self, patterns: list[str] | tuple[str, ...] = ()) -> None:
        self._rules: list[tuple[str, bool, re.Pattern[str] | None]] = []
        self.add(patterns)

    def add(self, patterns: list[str] | tuple[str, ...]) -> None:
        for raw in patterns:
            pattern = raw.strip()
            if not pattern or pattern.startswith("#"):
                continue
            negated = pattern.startswith("!")
            if negated:
                pattern = pattern[1:]
            pattern = pattern.replace("\\", "/").rstrip("/")
            if pattern.startswith("./"):
                pattern = pattern[2:]
            anchored = "/" in pattern
            pattern = pattern.lstrip("/")
            if pattern.startswith("**/") and "/" not in pattern[3:]:
                pattern = pattern[3:]
                anchored = False
            if pattern:
                self._rules.append((pattern, negated, _compile_anchored(pattern) if anchored else None))

    def _matches(self, pattern: str, anchored: re.Pattern[str] | None, parts: list[str]) -> bool:
        if anchored is not None:
            # a match on any leading directory also covers everything below it
            return any(anchored.fullmatch("/".join(parts[: i + 1])) for i in range(len(parts)))
        return any(fnmatch.fnmatchcase(part, pattern) for part in parts)

    def ignores(self, relative_path: str) -> bool:
        parts = [p for p in relative_path.replace("\\", "/").split("/") if p and p != "."]
        if not parts:
            return False
        ignored = False
        for pattern, negated, anchored in self._rules:
            if self._matches(pattern, anchored, parts):
                ignored = not negated
        return ignored


def _read_ignore_file(path: Path) -> list[str]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError:
        return []
    return [line.strip() for line in content.splitlines() if line.strip() and not line.strip().startswith("#")]


def load_ignore_rules(context: Path, dockerfile: str | Path | None = None) -> IgnoreRules:
    """Union the built-in ignores with .dockerignore files in the context
    root and (if nested under the context) the Dockerfile's directory."""
    rules = IgnoreRules(BUILTIN_IGNORES)
    candidates = [context / ".dockerignore"]
    if dockerfile:
        docker_dir = Path(dockerfile).resolve().parent
        if docker_dir != context and docker_dir.is_relative_to(context):
            candidates.append(docker_dir / ".dockerignore")
    for candidate in candidates:
        rules.add(_read_ignore_file(candidate))
    return rules


def pack_build_context(context: str | Path, dockerfile: str | Path | None = None) -> bytes:
    """Tar the build context directory, honouring the ignore rules."""
    root = Path(context).resolve()
    rules = load_ignore_rules(root, dockerfile)
    dockerfile_rel = None
    if dockerfile:
        resolved = Path(dockerfile).resolve()
        if resolved.is_relative_to(root):
            dockerfile_rel = resolved.relative_to(root).as_posix()

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for dirpath, dirnames, filenames in os.walk(root):
            rel_dir = Path(dirpath).relative_to(root).as_posix()
            rel_dir = "" if rel_dir == "." else rel_dir
            kept_dirs = []
            for name in sorted(dirnames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                if not rules.ignores(rel):
                    kept_dirs.append(name)
                    tar.add(os.path.join(dirpath, name), arcname=rel, recursive=False)
            dirnames[:] = kept_dirs
            for name in sorted(filenames):
                rel = f"{rel_dir}/{name}" if rel_dir else name
                # The daemon needs the Dockerfile even if an ignore rule covers it
                if rules.ignores(rel) and rel != dockerfile_rel:
                    continue
                tar.add(os.path.join(dirpath, name), arcname=rel, recursive=False)
    return buffer.getvalue()


def normalize_dockerfile_path(context: str | None, dockerfile: str | None) -> str | None:
    """Return the Dockerfile path relative to the context, with forward slashes."""
    if not dockerfile:
        return dockerfile
    normalized_dockerfile = dockerfile.replace("\\", "/")
    if not context:
        return normalized_dockerfile
    normalized_context = context.replace("\\", "/")
    if not posixpath.isabs(normalized_dockerfile) and ":" not in normalized_dockerfile.split("/")[0]:
        return normalized_dockerfile
    relative = posixpath.relpath(normalized_dockerfile, normalized_context)
    return relative if relative and relative != "." else normalized_dockerfile
