import os
from typing import Any, Callable, Iterator, Sequence

import pytest

from bacass.config import Config, RunConfig
from bacass.context import RunContext
from bacass.manifest import SampleRecord
from bacass.scheduler import Scheduler


@pytest.fixture
def scheduler() -> Iterator[Scheduler]:
    """
    Returns a Scheduler for testing.
    """
    yield Scheduler(config=Config({"scheduler": {"job_status_interval": "5"}}))


@pytest.fixture
def samples() -> Sequence[SampleRecord]:
    """
    One short read only sample and one sample with short and long reads.
    """
    return (
        SampleRecord("A", short_read1="A_R1.fastq.gz", short_read2="A_R2.fastq.gz"),
        SampleRecord(
            "B",
            short_read1="B_R1.fastq.gz",
            short_read2="B_R2.fastq.gz",
            long_read="B_long.fastq.gz",
        ),
    )


@pytest.fixture
def make_context(tmp_path, samples) -> Callable[..., RunContext]:
    """
    Returns a factory of RunContexts writing below a temporary output dir.
    """

    def make(samples: Sequence[SampleRecord] = samples, **params: Any) -> RunContext:
        params.setdefault("output_dir", os.path.join(str(tmp_path), "results"))
        params.setdefault("skip_kraken2", True)
        return RunContext.create(RunConfig(**params), samples=samples, run_id="test-run")

    return make
