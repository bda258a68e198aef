"""Shared fixtures for converter tests."""

import itertools
import textwrap

import pytest

from hlsconvert.jobs.scheduler import JobScheduler
from hlsconvert.jobs.store import JobStore
from hlsconvert.storage.artifacts import ArtifactManager
from fakes import FakeRunner


@pytest.fixture
def downloads_dir(tmp_path):
    return tmp_path / "downloads"


@pytest.fixture
def artifacts(downloads_dir):
    return ArtifactManager(base_dir=str(downloads_dir))


@pytest.fixture
def store(artifacts):
    return JobStore(reserve_path=artifacts.reserve_path)


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_scheduler(store, fake_runner, artifacts):
    def factory(max_concurrent=1, runner=None):
        return JobScheduler(
            store=store,
            runner=runner or fake_runner,
            artifacts=artifacts,
            max_concurrent=max_concurrent,
        )
    return factory


@pytest.fixture
def fake_ffmpeg(tmp_path):
    """Write an executable shell script standing in for ffmpeg; returns its path."""
    counter = itertools.count()

    def write(body: str) -> str:
        path = tmp_path / f"ffmpeg-{next(counter)}"
        path.write_text("#!/bin/sh\n" + textwrap.dedent(body))
        path.chmod(0o755)
        return str(path)

    return write
