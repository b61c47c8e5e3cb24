import os
import tempfile
from functools import wraps
from typing import Any, Callable, List, Sequence


def use_tempdir(func: Callable) -> Callable:
    """
    Run function within a temporary directory.
    """

    @wraps(func)
    def wrap(*args: Any, **kwargs: Any) -> Any:
        with tempfile.TemporaryDirectory() as tmpdir:
            original_dir = os.getcwd()
            os.chdir(tmpdir)

            try:
                result = func(*args, **kwargs)
            finally:
                os.chdir(original_dir)
        return result

    return wrap


def write_manifest(path: str, rows: Sequence[Sequence[str]], delimiter: str = ",") -> str:
    """
    Write a sample manifest with the standard header.
    """
    lines: List[str] = [delimiter.join(["ID", "R1", "R2", "LongFastQ", "Fast5", "GenomeSize"])]
    lines.extend(delimiter.join(row) for row in rows)
    with open(path, "w") as out:
        out.write("\n".join(lines) + "\n")
    return path


def value_task(template: str) -> Callable:
    """
    Returns a python task publishing `template` formatted with the key and inputs.
    """

    def func(ctx):
        return {
            channel: template.format(key=ctx.key, **ctx.inputs) for channel in ctx.outputs
        }

    return func
