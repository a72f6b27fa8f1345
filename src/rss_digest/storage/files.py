"""File helpers for the markdown backend: atomic writes, locking, slugs and front matter."""

import fcntl
import os
import re
import tempfile
import threading
from contextlib import contextmanager
from typing import Callable

import yaml

LOCK_FILENAME = ".lock"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_DELIMITER = "---\n"


def atomic_write(path: str, data: str | bytes) -> None:
    """Write data to path so readers see either the old or the new file."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, mode=0o700, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".part")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class DirLock:
    """Advisory lock on ``<directory>/.lock``.

    Readers take it shared, writers exclusive. Re-entrant inside one
    process, so a store method can call another locked method while the
    lock is held; an exclusive request made under a shared hold upgrades it.
    """

    def __init__(self, directory: str):
        self.path = os.path.join(directory, LOCK_FILENAME)
        self._mutex = threading.RLock()
        self._depth = 0
        self._fd: int | None = None
        self._exclusive = False

    def acquire(self, shared: bool = False) -> None:
        self._mutex.acquire()
        try:
            if self._fd is None:
                fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
                try:
                    fcntl.flock(fd, fcntl.LOCK_SH if shared else fcntl.LOCK_EX)
                except BaseException:
                    os.close(fd)
                    raise
                self._fd = fd
                self._exclusive = not shared
            elif not shared and not self._exclusive:
                fcntl.flock(self._fd, fcntl.LOCK_EX)
                self._exclusive = True
        except BaseException:
            self._mutex.release()
            raise
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._fd is not None:
            try:
                fcntl.flock(self._fd, fcntl.LOCK_UN)
            finally:
                os.close(self._fd)
                self._fd = None
                self._exclusive = False
        self._mutex.release()

    @contextmanager
    def held(self, shared: bool = False):
        self.acquire(shared)
        try:
            yield
        finally:
            self.release()


def slugify(text: str) -> str:
    """Lowercase, runs of non-alphanumerics collapsed to a single hyphen."""
    slug = _NON_ALNUM.sub("-", text.lower()).strip("-")
    return slug or "untitled"


def unique_slug(base: str, taken: Callable[[str], bool]) -> str:
    """slugify(base), suffixed with -2, -3, ... until taken() says it is free."""
    slug = slugify(base)
    candidate = slug
    n = 2
    while taken(candidate):
        candidate = f"{slug}-{n}"
        n += 1
    return candidate


def read_yaml(path: str, default=None):
    """Load a YAML file; a missing or empty file yields default."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return default
    return default if data is None else data


def dump_yaml(data) -> str:
    return yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)


def render_front_matter(meta: dict, body: str | None) -> str:
    """``---``, YAML metadata, ``---``, a blank line, then the body verbatim."""
    text = _DELIMITER + dump_yaml(meta) + _DELIMITER
    if body is not None:
        text += "\n" + body
    return text


def parse_front_matter(text: str) -> tuple[dict, str | None]:
    """Split a document produced by render_front_matter.

    Raises:
        ValueError: if the document has no front matter block.
        yaml.YAMLError: if the metadata is not valid YAML.
    """
    if not text.startswith(_DELIMITER):
        raise ValueError("missing front matter")
    end = text.find("\n" + _DELIMITER, len(_DELIMITER) - 1)
    if end == -1:
        raise ValueError("unterminated front matter")

    meta = yaml.safe_load(text[len(_DELIMITER) : end + 1]) or {}
    if not isinstance(meta, dict):
        raise ValueError("front matter is not a mapping")

    body = text[end + 1 + len(_DELIMITER) :]
    if body.startswith("\n"):
        body = body[1:]
    return meta, body or None
