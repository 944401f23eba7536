"""
Git plumbing client.

All sync branch work goes through plumbing commands so the user's working
tree, HEAD and index are never touched:

- `hash-object -w --stdin-paths` to store file contents as blobs
- `read-tree --empty` / `update-index --index-info` / `write-tree` against a
  private index file (`GIT_INDEX_FILE`) to build trees
- `commit-tree` to create commits without checkout
- `update-ref <ref> <new> <old>` to move the branch only if nobody else did
- `ls-tree` / `cat-file --batch` to read branch content
"""

from __future__ import annotations

import logging
import os
import re
import subprocess
from pathlib import Path

from cairn.core.exceptions import GitError, PushRejectedError

logger = logging.getLogger(__name__)

INDEX_FILE_NAME = "cairn-index"

_REJECTION = re.compile(r"non-fast-forward|fetch first|\[rejected\]|\[remote rejected\]")
_MISSING_REMOTE_REF = re.compile(r"couldn't find remote ref", re.IGNORECASE)

_FALLBACK_IDENTITY = {
    "GIT_AUTHOR_NAME": "cairn",
    "GIT_AUTHOR_EMAIL": "cairn@localhost",
    "GIT_COMMITTER_NAME": "cairn",
    "GIT_COMMITTER_EMAIL": "cairn@localhost",
}


class GitRepo:
    """
    Thin wrapper around the git CLI for one repository.

    Example:
        >>> repo = GitRepo(Path("."))
        >>> tip = repo.rev_parse("refs/heads/cairn-sync")
        >>> files = repo.ls_tree(tip) if tip else {}
    """

    def __init__(self, cwd: Path, timeout: int = 60) -> None:
        self.cwd = cwd
        self.timeout = timeout
        self._git_dir: Path | None = None
        self._identity_env: dict[str, str] | None = None

    def _run(
        self,
        args: list[str],
        *,
        input_data: bytes | None = None,
        env: dict[str, str] | None = None,
    ) -> subprocess.CompletedProcess[bytes]:
        cmd = ["git"] + args
        logger.debug("Running git command: %s", " ".join(cmd))

        full_env = None
        if env:
            full_env = {**os.environ, **env}

        try:
            return subprocess.run(
                cmd,
                cwd=self.cwd,
                capture_output=True,
                timeout=self.timeout,
                input=input_data,
                env=full_env,
            )
        except subprocess.TimeoutExpired as e:
            raise GitError(f"Git command timed out: {' '.join(cmd)}", command=cmd) from e
        except FileNotFoundError as e:
            raise GitError("git not found in PATH", command=cmd) from e

    def run_bytes(
        self,
        args: list[str],
        *,
        input_data: bytes | None = None,
        env: dict[str, str] | None = None,
    ) -> bytes:
        """
        Run a git command and return its raw stdout.

        Raises:
            GitError: If the command exits non-zero
        """
        result = self._run(args, input_data=input_data, env=env)
        if result.returncode != 0:
            cmd = ["git"] + args
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise GitError(f"Git command failed: {' '.join(cmd)}", command=cmd, stderr=stderr)
        return result.stdout

    def run(
        self,
        args: list[str],
        *,
        input_data: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """
        Run a git command and return its stdout as stripped text.

        Raises:
            GitError: If the command exits non-zero
        """
        data = input_data.encode("utf-8") if input_data is not None else None
        out = self.run_bytes(args, input_data=data, env=env)
        return out.decode("utf-8", errors="replace").strip()

    def succeeds(self, args: list[str]) -> bool:
        """Run a git command and report whether it exited zero."""
        return self._run(args).returncode == 0

    # Repository queries

    def is_repo(self) -> bool:
        return self.succeeds(["rev-parse", "--git-dir"])

    @property
    def git_dir(self) -> Path:
        """Absolute path of the repository's git directory."""
        if self._git_dir is None:
            self._git_dir = Path(self.run(["rev-parse", "--absolute-git-dir"]))
        return self._git_dir

    @property
    def index_file(self) -> Path:
        """Private index used for staging sync commits."""
        return self.git_dir / INDEX_FILE_NAME

    def rev_parse(self, ref: str) -> str | None:
        """SHA for `ref`, or None if it does not resolve."""
        result = self._run(["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"])
        if result.returncode != 0:
            return None
        return result.stdout.decode().strip() or None

    def tree_of(self, commit: str) -> str:
        return self.run(["rev-parse", f"{commit}^{{tree}}"])

    def merge_base(self, a: str, b: str) -> str | None:
        """Best common ancestor of two commits, or None if unrelated."""
        result = self._run(["merge-base", a, b])
        if result.returncode != 0:
            return None
        return result.stdout.decode().strip() or None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return self.succeeds(["merge-base", "--is-ancestor", ancestor, descendant])

    def has_remote(self, remote: str) -> bool:
        return self.succeeds(["remote", "get-url", remote])

    # Reading trees and blobs

    def ls_tree(self, commit: str) -> dict[str, str]:
        """
        Map of every file path in `commit` to its blob SHA.

        Paths use forward slashes and are relative to the tree root.
        """
        out = self.run_bytes(["ls-tree", "-r", "-z", "--full-tree", commit])
        files: dict[str, str] = {}
        for record in out.split(b"\0"):
            if not record:
                continue
            meta, _, path = record.partition(b"\t")
            _mode, obj_type, sha = meta.decode().split(" ")
            if obj_type == "blob":
                files[path.decode("utf-8")] = sha
        return files

    def cat_blobs(self, shas: list[str]) -> dict[str, bytes]:
        """
        Read many blobs with one `cat-file --batch` call.

        Returns:
            Map of SHA to content (missing objects are omitted)
        """
        unique = list(dict.fromkeys(shas))
        if not unique:
            return {}
        out = self.run_bytes(
            ["cat-file", "--batch"], input_data="".join(f"{s}\n" for s in unique).encode()
        )

        blobs: dict[str, bytes] = {}
        pos = 0
        for sha in unique:
            header_end = out.index(b"\n", pos)
            header = out[pos:header_end].decode()
            pos = header_end + 1
            if header.endswith(" missing"):
                continue
            _sha, _type, size_str = header.split(" ")
            size = int(size_str)
            blobs[sha] = out[pos : pos + size]
            # Content is followed by a newline
            pos += size + 1
        return blobs

    # Writing objects

    def hash_files(self, paths: list[Path]) -> list[str]:
        """Store files as blobs; returns their SHAs in the same order."""
        if not paths:
            return []
        out = self.run(
            ["hash-object", "-w", "--stdin-paths", "--no-filters"],
            input_data="".join(f"{p}\n" for p in paths),
        )
        shas = out.splitlines()
        if len(shas) != len(paths):
            raise GitError(f"hash-object returned {len(shas)} SHAs for {len(paths)} paths")
        return shas

    def write_tree(self, files: dict[str, str]) -> str:
        """
        Build a tree holding exactly `files` (path -> blob SHA).

        Uses the private index so the user's index is untouched.
        """
        env = {"GIT_INDEX_FILE": str(self.index_file)}
        self.run(["read-tree", "--empty"], env=env)
        if files:
            index_info = "".join(
                f"100644 blob {sha}\t{path}\0" for path, sha in sorted(files.items())
            )
            self.run(["update-index", "-z", "--index-info"], input_data=index_info, env=env)
        return self.run(["write-tree"], env=env)

    def _commit_env(self) -> dict[str, str]:
        # Fall back to a fixed identity only where the user has none configured
        if self._identity_env is None:
            env: dict[str, str] = {}
            if not self.succeeds(["config", "user.name"]):
                env.update({k: v for k, v in _FALLBACK_IDENTITY.items() if k.endswith("NAME")})
            if not self.succeeds(["config", "user.email"]):
                env.update({k: v for k, v in _FALLBACK_IDENTITY.items() if k.endswith("EMAIL")})
            self._identity_env = env
        return self._identity_env

    def commit_tree(self, tree: str, parents: list[str], message: str) -> str:
        args = ["commit-tree", tree]
        for parent in parents:
            args += ["-p", parent]
        args += ["-m", message]
        return self.run(args, env=self._commit_env() or None)

    def update_ref(self, ref: str, new: str, old: str | None) -> None:
        """
        Move `ref` to `new` only if it currently points at `old`.

        `old=None` requires that the ref does not exist yet.

        Raises:
            GitError: If another process moved the ref first
        """
        expected = old if old is not None else "0" * len(new)
        self.run(["update-ref", ref, new, expected])

    # Remote transport

    def fetch(self, remote: str, branch: str) -> bool:
        """
        Fetch `branch` from `remote` into its remote-tracking ref.

        Returns:
            True if fetched, False if the remote has no such branch

        Raises:
            GitError: On any other failure (network, auth, missing remote)
        """
        refspec = f"+refs/heads/{branch}:refs/remotes/{remote}/{branch}"
        try:
            self.run(["fetch", "--no-tags", remote, refspec])
            return True
        except GitError as e:
            if _MISSING_REMOTE_REF.search(e.stderr):
                return False
            raise

    def push(self, remote: str, commit: str, branch: str) -> None:
        """
        Push `commit` to `branch` on `remote` (fast-forward only).

        Raises:
            PushRejectedError: If the remote branch moved since the last fetch
            GitError: On any other failure
        """
        try:
            self.run(["push", remote, f"{commit}:refs/heads/{branch}"])
        except GitError as e:
            if _REJECTION.search(e.stderr):
                raise PushRejectedError(
                    f"Push to {remote}/{branch} rejected", command=e.command, stderr=e.stderr
                ) from e
            raise
