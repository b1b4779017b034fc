# checkout.py
# Source checkout providers. Invoked once before any job; failures are fatal.
from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Optional, Protocol

from .errors import CheckoutError
from .git_facts import git


class CheckoutProvider(Protocol):
    def checkout(self, ref: Optional[str]) -> Path: ...

    def close(self) -> None: ...


class LocalCheckout:
    """Use an existing directory as the working tree. `ref` must be empty."""

    def __init__(self, path: str | Path = "."):
        self.path = Path(path).expanduser().resolve()

    def checkout(self, ref: Optional[str] = None) -> Path:
        if ref:
            raise CheckoutError("Local checkout cannot switch refs; use a git checkout", ref=ref)
        if not self.path.is_dir():
            raise CheckoutError(f"Working directory not found: {self.path}")
        return self.path

    def close(self) -> None:
        pass


class GitCheckout:
    """
    Clone a repository into a scratch directory and check out `ref`.

    The clone is removed by close(), so the caller's tree is never touched.
    """

    def __init__(self, repo: str | Path, scratch_root: str | Path | None = None):
        self.repo = repo
        self.scratch_root = scratch_root
        self._scratch: Optional[Path] = None
        self.sha: Optional[str] = None

    def checkout(self, ref: Optional[str] = None) -> Path:
        ref = ref or "HEAD"
        self._scratch = Path(tempfile.mkdtemp(prefix="pipewright-checkout-", dir=self.scratch_root))
        dest = self._scratch / "src"

        try:
            git.clone(self.repo, dest)
            try:
                sha = git.checkout(ref, cwd=dest)
            except subprocess.CalledProcessError:
                # Branches of the source only exist as remote-tracking refs in the clone
                sha = git.checkout(f"origin/{ref}", cwd=dest)
        except subprocess.CalledProcessError as e:
            self.close()
            stderr = (e.stderr or "").strip()
            raise CheckoutError(f"git failed: {stderr or e}", ref=ref, repo=str(self.repo)) from e
        except FileNotFoundError as e:
            self.close()
            raise CheckoutError("git command not found. Please install Git.", ref=ref) from e

        self.sha = sha
        return dest

    def close(self) -> None:
        if self._scratch is not None:
            shutil.rmtree(self._scratch, ignore_errors=True)
            self._scratch = None
