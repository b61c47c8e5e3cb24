"""
Sample manifest loading.

A manifest is a table with one row per sample and the header::

    ID  R1  R2  LongFastQ  Fast5  GenomeSize

Empty cells (or `NA`) mark absent optional data.
"""

import csv
import dataclasses
import os
from typing import Any, Iterable, List, Optional, Union

MANIFEST_COLUMNS = ("ID", "R1", "R2", "LongFastQ", "Fast5", "GenomeSize")
MISSING_VALUES = ("", "NA")

# Key of global channels. Reserved, so it is never a sample ID.
GLOBAL_KEY = "*"


class MalformedManifestError(Exception):
    """
    Raised when the sample manifest cannot be turned into sample records.
    """

    def __init__(self, message: str, row: Optional[int] = None):
        self.row = row
        if row is not None:
            message = f"Manifest row {row}: {message}"
        super().__init__(message)


class _Absent:
    """
    Marker for optional manifest data that was not provided.
    """

    _instance: Optional["_Absent"] = None

    def __new__(cls) -> "_Absent":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "ABSENT"

    def __reduce__(self):
        return (_Absent, ())


ABSENT: Any = _Absent()

MaybePath = Union[str, _Absent]


@dataclasses.dataclass(frozen=True)
class SampleRecord:
    """
    One row of the sample manifest.
    """

    id: str
    short_read1: MaybePath = ABSENT
    short_read2: MaybePath = ABSENT
    long_read: MaybePath = ABSENT
    fast5_dir: MaybePath = ABSENT
    genome_size: MaybePath = ABSENT

    def __post_init__(self) -> None:
        check_sample_id(self.id)

    @property
    def has_short_reads(self) -> bool:
        return self.short_read1 is not ABSENT and self.short_read2 is not ABSENT

    @property
    def has_long_reads(self) -> bool:
        return self.long_read is not ABSENT

    @property
    def has_fast5(self) -> bool:
        return self.fast5_dir is not ABSENT

    @property
    def can_assemble(self) -> bool:
        return self.has_short_reads or self.has_long_reads

    def with_fast5_dir(self, fast5_dir: str) -> "SampleRecord":
        return dataclasses.replace(self, fast5_dir=fast5_dir)

    def to_dict(self) -> dict:
        values = dataclasses.asdict(self)
        return {key: (None if value is ABSENT else value) for key, value in values.items()}


def check_sample_id(sample_id: str, row: Optional[int] = None) -> None:
    """
    Reject sample IDs that cannot key channels or name output directories.
    """
    if not sample_id or sample_id in MISSING_VALUES:
        raise MalformedManifestError("Missing sample ID.", row=row)
    if sample_id == GLOBAL_KEY:
        raise MalformedManifestError(f"Sample ID '{GLOBAL_KEY}' is reserved.", row=row)
    if "/" in sample_id or os.sep in sample_id or ".." in sample_id:
        raise MalformedManifestError(
            f"Sample ID '{sample_id}' must not contain path separators or '..'.", row=row
        )


def _cell(row: dict, column: str, base_dir: Optional[str], is_path: bool = True) -> Any:
    value = (row.get(column) or "").strip()
    if value in MISSING_VALUES:
        return ABSENT
    if is_path and base_dir and not os.path.isabs(value) and "://" not in value:
        value = os.path.normpath(os.path.join(base_dir, value))
    return value


def _detect_delimiter(header_line: str, filename: Optional[str]) -> str:
    if filename and filename.endswith((".tsv", ".txt")):
        return "\t"
    return "\t" if header_line.count("\t") > header_line.count(",") else ","


def parse_manifest(
    lines: Iterable[str], base_dir: Optional[str] = None, filename: Optional[str] = None
) -> List[SampleRecord]:
    """
    Parse manifest lines into sample records.

    Relative file paths are resolved against `base_dir` when given.
    """
    # Keep file line numbers for error messages.
    numbered = [
        (line_num, line)
        for line_num, line in enumerate(lines, 1)
        if line.strip() and not line.startswith("#")
    ]
    if not numbered:
        raise MalformedManifestError("Manifest is empty; expected a header row.")

    line_nums = [line_num for line_num, _ in numbered]
    delimiter = _detect_delimiter(numbered[0][1], filename)
    reader = csv.DictReader([line for _, line in numbered], delimiter=delimiter)
    header = [column.strip() for column in (reader.fieldnames or [])]
    missing = [column for column in MANIFEST_COLUMNS if column not in header]
    if missing:
        raise MalformedManifestError(
            "Manifest header is missing column(s): {} (expected {})".format(
                ", ".join(missing), ",".join(MANIFEST_COLUMNS)
            )
        )
    reader.fieldnames = header

    samples: List[SampleRecord] = []
    seen_ids = set()
    for row in reader:
        row_num = line_nums[reader.line_num - 1]
        sample_id = (row.get("ID") or "").strip()
        check_sample_id(sample_id, row=row_num)
        if sample_id in seen_ids:
            raise MalformedManifestError(f"Duplicate sample ID '{sample_id}'.", row=row_num)
        seen_ids.add(sample_id)

        sample = SampleRecord(
            id=sample_id,
            short_read1=_cell(row, "R1", base_dir),
            short_read2=_cell(row, "R2", base_dir),
            long_read=_cell(row, "LongFastQ", base_dir),
            fast5_dir=_cell(row, "Fast5", base_dir),
            genome_size=_cell(row, "GenomeSize", None, is_path=False),
        )
        if (sample.short_read1 is ABSENT) != (sample.short_read2 is ABSENT):
            raise MalformedManifestError(
                f"Sample '{sample_id}' must provide both R1 and R2 or neither.", row=row_num
            )
        if not sample.can_assemble:
            raise MalformedManifestError(
                f"Sample '{sample_id}' has neither short read pairs nor long reads.",
                row=row_num,
            )
        samples.append(sample)

    if not samples:
        raise MalformedManifestError("Manifest contains no samples.")
    return samples


def load_manifest(path: str) -> List[SampleRecord]:
    """
    Load sample records from a manifest file.
    """
    if not os.path.exists(path):
        raise MalformedManifestError(f"Manifest file not found: {path}")
    with open(path, newline="") as infile:
        return parse_manifest(
            infile.read().splitlines(),
            base_dir=os.path.dirname(os.path.abspath(path)),
            filename=path,
        )
