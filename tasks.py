"""Invoke tasks for the bucketdock development workflow.

Every task shells out to ``uv`` so local runs match CI: environment sync,
builds, releases, the pytest suite, Ruff, and MyPy.
"""

from __future__ import annotations

import shlex
import shutil
from collections.abc import Mapping, Sequence
from pathlib import Path

from invoke import Collection, Context, task

PROJECT_ROOT = Path(__file__).parent
DIST_DIR = PROJECT_ROOT / "dist"
SOURCE_DIRS = ("src", "tests")


def _uv(
    ctx: Context,
    args: Sequence[str],
    *,
    echo: bool = True,
    dry_run: bool = False,
    env: Mapping[str, str] | None = None,
) -> None:
    """Run ``uv`` with ``args``.

    Args:
        ctx: Invoke execution context.
        args: Arguments placed after the ``uv`` executable.
        echo: Echo the command before running it.
        dry_run: Print the command instead of running it.
        env: Extra environment variables for the invocation.
    """
    command = shlex.join(("uv", *args))
    if dry_run:
        print(f"[dry-run] {command}")
        return
    run_env = dict(ctx.config.run.env or {})
    if env:
        run_env.update(env)
    ctx.run(command, echo=echo, pty=True, env=run_env)


@task(help={"dev": "Also install the dev extra (pytest, ruff, mypy, stubs)."})
def sync(ctx: Context, dev: bool = True) -> None:
    """Create or refresh the virtual environment."""
    args = ["sync"]
    if dev:
        args.extend(["--extra", "dev"])
    _uv(ctx, args)


@task(help={"clean": "Empty dist/ before building."})
def build(ctx: Context, clean: bool = False) -> None:
    """Build the sdist and wheel into ``dist/``."""
    if clean and DIST_DIR.exists():
        for artifact in DIST_DIR.iterdir():
            if artifact.is_dir():
                shutil.rmtree(artifact)
            else:
                artifact.unlink()
    _uv(ctx, ["build"])


@task(
    help={
        "part": "Version component to bump (major, minor, patch).",
        "value": "Explicit version to set instead of bumping.",
        "dry_run": "Show the new version without editing pyproject.toml.",
    }
)
def bump_version(ctx: Context, part: str = "patch", value: str | None = None, dry_run: bool = False) -> None:
    """Bump or set the project version."""
    args: list[str] = ["version", value] if value else ["version", "--bump", part]
    if dry_run:
        args.append("--dry-run")
    _uv(ctx, args)


@task(
    help={
        "index_url": "Package index to upload to (defaults to PyPI).",
        "token": "API token for the index; the command is not echoed when set.",
        "skip_existing": "Skip files already present on the index.",
        "dry_run": "Print the command without uploading.",
    }
)
def publish(
    ctx: Context,
    index_url: str | None = None,
    token: str | None = None,
    skip_existing: bool = False,
    dry_run: bool = False,
) -> None:
    """Upload the contents of ``dist/``."""
    args: list[str] = ["publish"]
    if index_url:
        args.extend(["--index-url", index_url])
    if skip_existing:
        args.append("--skip-existing")
    if token:
        args.extend(["--token", token])
    _uv(ctx, args, dry_run=dry_run, echo=token is None)


@task(
    help={
        "part": "Version component to bump before publishing.",
        "index_url": "Package index for the publish step.",
        "token": "API token forwarded to publish.",
        "skip_existing": "Skip files already present on the index.",
        "dry_run": "Print each step without running it.",
    },
)
def release(
    ctx: Context,
    part: str = "patch",
    index_url: str | None = None,
    token: str | None = None,
    skip_existing: bool = False,
    dry_run: bool = False,
) -> None:
    """Bump the version, rebuild, and publish."""
    ctx.invoke(bump_version, part=part, dry_run=dry_run)
    if dry_run:
        print("[dry-run] uv build")
        print("[dry-run] uv publish")
        return
    ctx.invoke(build, clean=True)
    ctx.invoke(publish, index_url=index_url, token=token, skip_existing=skip_existing)


@task(
    help={
        "k": "pytest -k expression.",
        "path": "Test file or directory (defaults to tests/).",
        "options": "Extra flags passed to pytest verbatim.",
    }
)
def tests(ctx: Context, k: str = "", path: str = "tests", options: str = "") -> None:
    """Run the pytest suite.

    The suite runs against an in-memory storage backend, so no provider
    credentials or network access are needed.
    """
    args: list[str] = ["run", "pytest"]
    if k:
        args.extend(["-k", k])
    if options:
        args.extend(shlex.split(options))
    args.append(path)
    _uv(ctx, args)


@task(help={"fix": "Apply Ruff auto-fixes.", "check_format": "Run `ruff format --check` first."})
def lint(ctx: Context, fix: bool = False, check_format: bool = False) -> None:
    """Run Ruff over the package and tests."""
    if check_format:
        _uv(ctx, ["run", "ruff", "format", "--check", *SOURCE_DIRS])
    args: list[str] = ["run", "ruff", "check", *SOURCE_DIRS]
    if fix:
        args.append("--fix")
    _uv(ctx, args)


@task
def mypy(ctx: Context) -> None:
    """Type-check the package."""
    _uv(ctx, ["run", "mypy", "src"])


@task
def smoke(ctx: Context) -> None:
    """Check that the installed console script starts and reads its config."""
    _uv(ctx, ["run", "bucketdock", "--version"])
    _uv(ctx, ["run", "bucketdock", "config", "view", "--no-env"])


@task
def ci(ctx: Context) -> None:
    """Run lint, type checks, and tests the way CI does."""
    ctx.invoke(lint, check_format=True)
    ctx.invoke(mypy)
    ctx.invoke(tests)


namespace = Collection(sync, build, bump_version, publish, release, tests, lint, mypy, smoke, ci)
