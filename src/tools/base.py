# src/tools/base.py
import os
import stat
from abc import ABC, abstractmethod
from contextlib import contextmanager


class AutomationToolAdapter(ABC):
    """A command-line automation tool run from a fixed working directory."""

    def __init__(self, base_path: str):
        self.base_path = os.path.abspath(base_path)

    def resolve(self, path: str) -> str:
        if os.path.isabs(path):
            return path
        return os.path.join(self.base_path, path)

    @abstractmethod
    def run_playbook(self, job_id, playbook, extra_vars_file, inventory, log_dir, vault_secret, timeout=None):
        pass

    @abstractmethod
    def syntax_check(self, playbook) -> tuple:
        pass


@contextmanager
def secret_file(path: str, content: str):
    """Write `content` to a 0600 file that is removed on exit."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, stat.S_IRUSR | stat.S_IWUSR)
    try:
        with os.fdopen(fd, "w") as fh:
            fh.write(content)
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        yield path
    finally:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
