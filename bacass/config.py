import dataclasses
import os
from configparser import ConfigParser, ExtendedInterpolation, SectionProxy
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import yaml

from bacass.utils import parse_memory, str2bool

ASSEMBLERS = ("canu", "miniasm", "unicycler")
ASSEMBLY_TYPES = ("short", "long", "hybrid")
POLISH_METHODS = ("nanopolish", "medaka")
JOIN_POLICIES = ("skip", "null", "fatal")

# Assemblers that only consume long reads.
LONG_READ_ASSEMBLERS = ("canu", "miniasm")

DEFAULT_RESOURCES = {
    "small": (2, 8.0),
    "medium": (4, 16.0),
    "large": (8, 32.0),
}

BACASS_CONFIG_ENV = "BACASS_CONFIG"
BACASS_INI_FILE = "bacass.ini"
DEFAULT_BACASS_INI = """\
# bacass configuration.

[params]
assembler = unicycler
assembly_type = short
skip_kraken2 = false
# kraken2_db_path = /data/kraken2/minikraken2_v2_8GB
output_dir = results

[resources]
small = 2, 8.GB
medium = 4, 16.GB
large = 8, 32.GB

[scheduler]
job_status_interval = 20

[executors.default]
type = local
max_workers = 20
"""


class ConfigurationError(Exception):
    """
    Raised when required run parameters are missing or contradict each other.
    """

    pass


class BacassExtendedInterpolation(ExtendedInterpolation):
    """
    When performing variable interpolation fallback to environment variables.

    For example, if the environment variable KRAKEN_DB is defined, we can
    reference it in the `bacass.ini` file as follows:

    .. code-block:: ini
        [params]
        kraken2_db_path = ${KRAKEN_DB}
    """

    def before_get(self, parser, section, option, value, defaults):
        # Fallback to environment variables when interpolating variables.
        defaults = {
            **defaults,
            **os.environ,
        }
        return super().before_get(parser, section, option, value, defaults)


class BacassConfigParser(ConfigParser):
    def optionxform(self, optionstr):
        # Treat option names as case sensitive.
        return optionstr


class Config:
    """
    Extends ConfigParser to support nested sections.
    """

    def __init__(self, config_dict: Optional[dict] = None):
        self.parser = BacassConfigParser(interpolation=BacassExtendedInterpolation())
        self._sections: "Section" = {}
        if config_dict:
            self.read_dict(config_dict)

    def read_string(self, string: str) -> None:
        self.parser.read_string(string)
        self._sections = self._parse_sections(self.parser)

    def read_path(self, filename: str) -> None:
        with open(filename) as infile:
            self.parser.read_file(infile)
            self._sections = self._parse_sections(self.parser)

    def read_dict(self, config_dict: dict) -> None:
        self.parser.read_dict(config_dict)
        self._sections = self._parse_sections(self.parser)

    def _parse_sections(self, parser) -> Union[dict, "Section"]:
        """
        Parse a dot notation section into nested dicts.
        """
        full_sections = parser.sections()
        nested_sections: dict = {}
        for full_section in full_sections:
            parts = full_section.split(".")
            ptr = nested_sections
            for part in parts[:-1]:
                if part not in ptr:
                    ptr[part] = {}
                ptr = ptr[part]

            ptr[parts[-1]] = parser[full_section]
        return nested_sections

    def get(self, key: str, default: Any = None) -> Any:
        return self._sections.get(key, default)

    def __getitem__(self, section_name: str) -> Any:
        return self._sections[section_name]

    def __setitem__(self, section_name: str, section: "Section") -> "Section":
        self._sections[section_name] = section  # type: ignore
        return section

    def keys(self) -> Iterable[str]:
        return self._sections.keys()

    def items(self):
        return self._sections.items()


Section = Union[dict, SectionProxy, Config]


def create_config_section(config_dict: Optional[dict] = None) -> SectionProxy:
    """
    Create a default section.
    """
    return Config({"section": config_dict or {}})["section"]


def load_config(path: Optional[str] = None) -> Config:
    """
    Load a bacass config file.

    The path defaults to `$BACASS_CONFIG` and then to `bacass.ini` in the
    current directory. When no file exists the built-in defaults are used.
    """
    config = Config()
    path = path or os.environ.get(BACASS_CONFIG_ENV)
    if path:
        if not os.path.exists(path):
            raise ConfigurationError(f"Config file not found: {path}")
        config.read_path(path)
    elif os.path.exists(BACASS_INI_FILE):
        config.read_path(BACASS_INI_FILE)
    else:
        config.read_string(DEFAULT_BACASS_INI)
    return config


def load_params_file(path: str) -> Dict[str, Any]:
    """
    Load run parameters from a YAML (or JSON) params file.
    """
    if not os.path.exists(path):
        raise ConfigurationError(f"Params file not found: {path}")
    with open(path) as infile:
        try:
            params = yaml.safe_load(infile)
        except yaml.YAMLError as error:
            raise ConfigurationError(f"Invalid params file {path}: {error}") from error

    if params is None:
        return {}
    if not isinstance(params, dict):
        raise ConfigurationError(f"Params file must contain a mapping: {path}")
    return params


def parse_resources(
    resources_config: Optional[Mapping[str, str]] = None
) -> Dict[str, Tuple[int, float]]:
    """
    Parse resource classes from a `[resources]` config section.

    Each entry has the form `name = cpus, memory`, e.g. `large = 8, 32.GB`.
    """
    resources = dict(DEFAULT_RESOURCES)
    for name, value in (resources_config or {}).items():
        try:
            cpus_text, memory_text = [part.strip() for part in value.split(",")]
            resources[name] = (int(cpus_text), parse_memory(memory_text))
        except ValueError as error:
            raise ConfigurationError(
                f"Invalid resource class '{name} = {value}': expected 'cpus, memory'."
            ) from error
    return resources


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


@dataclasses.dataclass(frozen=True)
class RunConfig:
    """
    Immutable snapshot of the run parameters.

    Captured once at run start and shared by reference with the scheduler,
    executors and report aggregator.
    """

    assembler: str = "unicycler"
    assembly_type: str = "short"
    skip_kraken2: bool = False
    kraken2_db_path: Optional[str] = None
    genome_size: Optional[str] = None
    unicycler_extra_args: str = ""
    canu_extra_args: str = ""
    prokka_extra_args: str = ""
    output_dir: str = "results"
    work_dir: Optional[str] = None
    long_reads_enabled: Optional[bool] = None
    fast5_dir: Optional[str] = None
    notification_email: Optional[str] = None
    skip_annotation: bool = False
    skip_pycoqc: bool = False
    skip_polish: bool = False
    polish_method: str = "nanopolish"
    join_policy: str = "skip"
    max_cpus: int = 16
    max_memory: float = 128.0
    stub: bool = False

    BOOL_FIELDS = (
        "skip_kraken2",
        "long_reads_enabled",
        "skip_annotation",
        "skip_pycoqc",
        "skip_polish",
        "stub",
    )
    OPTIONAL_FIELDS = (
        "kraken2_db_path",
        "genome_size",
        "work_dir",
        "fast5_dir",
        "notification_email",
    )

    def __post_init__(self) -> None:
        # Derive long read support from the assembly type when not given.
        if self.long_reads_enabled is None:
            object.__setattr__(self, "long_reads_enabled", self.assembly_type != "short")
        if self.work_dir is None:
            object.__setattr__(self, "work_dir", os.path.join(self.output_dir, "work"))

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "RunConfig":
        """
        Build a RunConfig from loosely typed values (INI strings, YAML, CLI).
        """
        field_names = {field.name for field in dataclasses.fields(cls)}
        unknown = sorted(set(params) - field_names)
        if unknown:
            raise ConfigurationError("Unknown parameter(s): {}".format(", ".join(unknown)))

        kwargs: Dict[str, Any] = {}
        for key, value in params.items():
            if value is None:
                continue
            try:
                if key in cls.BOOL_FIELDS:
                    kwargs[key] = str2bool(value)
                elif key == "max_cpus":
                    kwargs[key] = int(value)
                elif key == "max_memory":
                    kwargs[key] = parse_memory(value)
                elif key in cls.OPTIONAL_FIELDS:
                    kwargs[key] = _optional_str(value)
                else:
                    kwargs[key] = str(value).strip()
            except ValueError as error:
                raise ConfigurationError(f"Invalid value for {key}: {error}") from error
        return cls(**kwargs)

    def validate(self) -> "RunConfig":
        """
        Check that required parameters are present and consistent.
        """
        if self.assembler not in ASSEMBLERS:
            raise ConfigurationError(
                f"Unknown assembler '{self.assembler}'. Choose from: {', '.join(ASSEMBLERS)}."
            )
        if self.assembly_type not in ASSEMBLY_TYPES:
            raise ConfigurationError(
                f"Unknown assembly_type '{self.assembly_type}'. "
                f"Choose from: {', '.join(ASSEMBLY_TYPES)}."
            )
        if self.polish_method not in POLISH_METHODS:
            raise ConfigurationError(
                f"Unknown polish_method '{self.polish_method}'. "
                f"Choose from: {', '.join(POLISH_METHODS)}."
            )
        if self.join_policy not in JOIN_POLICIES:
            raise ConfigurationError(
                f"Unknown join_policy '{self.join_policy}'. "
                f"Choose from: {', '.join(JOIN_POLICIES)}."
            )
        if self.assembler == "canu" and not self.genome_size:
            raise ConfigurationError("The canu assembler requires genome_size (e.g. 2.8m).")
        if self.assembler in LONG_READ_ASSEMBLERS and self.assembly_type == "short":
            raise ConfigurationError(
                f"The {self.assembler} assembler cannot assemble short reads only; "
                "use assembly_type long or hybrid."
            )
        if self.assembly_type != "short" and not self.long_reads_enabled:
            raise ConfigurationError(
                f"assembly_type {self.assembly_type} requires long_reads_enabled."
            )
        if not self.skip_kraken2 and not self.kraken2_db_path:
            raise ConfigurationError(
                "kraken2_db_path is required unless skip_kraken2 is set."
            )
        if self.max_cpus <= 0 or self.max_memory <= 0:
            raise ConfigurationError("max_cpus and max_memory must be positive.")
        return self

    def check_paths(self) -> None:
        """
        Check that external paths named by the parameters exist.
        """
        if not self.skip_kraken2 and self.kraken2_db_path:
            if not os.path.exists(self.kraken2_db_path):
                raise ConfigurationError(
                    f"kraken2 database not found: {self.kraken2_db_path}"
                )
        if self.fast5_dir and not os.path.isdir(self.fast5_dir):
            raise ConfigurationError(f"fast5_dir is not a directory: {self.fast5_dir}")

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def get_run_config(
    config: Config,
    params_file: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunConfig:
    """
    Merge run parameters from all sources and validate them.

    Precedence (lowest first): built-in defaults, `[params]` config section,
    YAML params file, explicit overrides (e.g. CLI flags).
    """
    params: Dict[str, Any] = dict(config.get("params", {}))
    if params_file:
        params.update(load_params_file(params_file))
    if overrides:
        params.update({key: value for key, value in overrides.items() if value is not None})
    return RunConfig.from_dict(params).validate()
