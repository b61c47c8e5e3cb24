import os
import subprocess
from textwrap import dedent
from typing import Callable, Optional, Union

# By default, use bash shell with immediate exit on first error.
DEFAULT_SHELL = "#!/usr/bin/env bash\nset -euo pipefail"

COMMAND_FILE = ".command.sh"
STDOUT_FILE = ".command.out"
STDERR_FILE = ".command.err"
EXITCODE_FILE = ".exitcode"


class ScriptError(Exception):
    """
    Error raised when user script returns failure (non-zero exit code).
    """

    def __init__(self, stderr: bytes, returncode: Optional[int] = None):
        self.returncode = returncode
        self.message: Union[bytes, str]

        try:
            self.message = stderr.decode("utf8")
        except UnicodeDecodeError:
            # Error might not be utf8. Keep as is.
            self.message = stderr

    def __str__(self) -> str:
        if isinstance(self.message, str) and self.message.strip():
            lines = self.message.rstrip("\n").rsplit("\n")
            return "Last line: " + lines[-1]
        elif self.returncode is not None:
            return f"Exit code {self.returncode}"
        else:
            return ""

    def __repr__(self) -> str:
        return f"ScriptError('{str(self)}')"


def prepare_command(command: str, default_shell: str = DEFAULT_SHELL) -> str:
    """
    Prepare a command string execution by removing surrounding blank lines and dedent.

    Also if an interpreter is not specified, add the default shell as interpreter.
    """
    command = dedent(command).strip()
    if not command.startswith("#!"):
        command = default_shell.rstrip("\n") + "\n" + command
    return command + "\n"


def write_command(command: str, work_dir: str) -> str:
    """
    Write a prepared command into `work_dir` as an executable script.
    """
    os.makedirs(work_dir, exist_ok=True)
    command_path = os.path.join(work_dir, COMMAND_FILE)
    with open(command_path, "w") as out:
        out.write(command)
    os.chmod(command_path, 0o755)
    return command_path


def exec_script(
    command: str,
    work_dir: str,
    on_start: Optional[Callable[[subprocess.Popen], None]] = None,
) -> int:
    """
    Run a script as a subprocess inside `work_dir`.

    The script, its stdout, stderr and exit code are kept in the work dir
    (`.command.sh`, `.command.out`, `.command.err`, `.exitcode`).
    `on_start` receives the running process so callers can terminate it.
    """
    command_path = write_command(command, work_dir)
    stdout_path = os.path.join(work_dir, STDOUT_FILE)
    stderr_path = os.path.join(work_dir, STDERR_FILE)

    with open(stdout_path, "wb") as stdout, open(stderr_path, "wb") as stderr:
        proc = subprocess.Popen(
            [command_path], cwd=work_dir, stdout=stdout, stderr=stderr, start_new_session=True
        )
        if on_start:
            on_start(proc)
        returncode = proc.wait()

    with open(os.path.join(work_dir, EXITCODE_FILE), "w") as out:
        out.write(f"{returncode}\n")

    if returncode != 0:
        # Raise error if command had error.
        with open(stderr_path, "rb") as infile:
            raise ScriptError(infile.read(), returncode=returncode)

    return returncode
