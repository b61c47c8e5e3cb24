"""
Explicit execution context of one pipeline run.

A RunContext is created once at run start and handed to the scheduler, to
every task instance (`TaskContext.run`) and to the report aggregator. It
replaces process-wide mutable run metadata.
"""

import dataclasses
import datetime
import os
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bacass.config import Config, RunConfig, parse_resources
from bacass.manifest import SampleRecord
from bacass.version import version

@dataclasses.dataclass(frozen=True)
class RunContext:
    run_id: str
    params: RunConfig
    resources: Dict[str, Tuple[int, float]]
    samples: Tuple[SampleRecord, ...] = ()
    manifest_path: Optional[str] = None
    argv: Tuple[str, ...] = ()
    start_time: datetime.datetime = dataclasses.field(default_factory=datetime.datetime.now)
    version: str = version

    @classmethod
    def create(
        cls,
        params: RunConfig,
        samples: Sequence[SampleRecord] = (),
        config: Optional[Config] = None,
        manifest_path: Optional[str] = None,
        argv: Optional[List[str]] = None,
        run_id: Optional[str] = None,
    ) -> "RunContext":
        """
        Snapshot the run parameters and resource classes for a new run.
        """
        resources_config = config.get("resources") if config else None
        return cls(
            run_id=run_id or str(uuid.uuid4()),
            params=params,
            resources=parse_resources(resources_config),
            samples=tuple(samples),
            manifest_path=manifest_path,
            argv=tuple(argv or ()),
        )

    @property
    def output_dir(self) -> str:
        return self.params.output_dir

    @property
    def work_dir(self) -> str:
        return self.params.work_dir or os.path.join(self.output_dir, "work")

    @property
    def info_dir(self) -> str:
        return os.path.join(self.output_dir, "pipeline_info")

    def get_resources(self, resource_class: str) -> Tuple[int, float]:
        """
        Returns the (cpus, memory GB) reservation of a resource class, capped
        at the run's `max_cpus` and `max_memory`.
        """
        cpus, memory = self.resources[resource_class]
        return (min(cpus, self.params.max_cpus), min(memory, self.params.max_memory))

    def to_dict(self) -> Dict[str, Any]:
        """
        Deterministic description of the run (no run id or timestamps).
        """
        return {
            "version": self.version,
            "params": self.params.to_dict(),
            "resources": {
                name: {"cpus": cpus, "memory": memory}
                for name, (cpus, memory) in sorted(self.resources.items())
            },
            "samples": [sample.to_dict() for sample in self.samples],
            "manifest": self.manifest_path,
        }
