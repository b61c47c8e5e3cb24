import argparse
import datetime
import sys
from argparse import Namespace
from typing import IO, Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

import bacass
from bacass.config import (
    ASSEMBLERS,
    ASSEMBLY_TYPES,
    JOIN_POLICIES,
    POLISH_METHODS,
    ConfigurationError,
    RunConfig,
    get_run_config,
    load_config,
)
from bacass.graph import GraphError, JoinMismatchError
from bacass.logging import log_levels, logger
from bacass.manifest import MalformedManifestError, load_manifest
from bacass.pipeline import assign_fast5_dirs, build_pipeline, run_pipeline
from bacass.report import AggregationIncompleteError, RunReport
from bacass.scheduler import (
    FAILED,
    SKIPPED,
    SUCCEEDED,
    RunCancelledError,
    RunFailedError,
    RunResult,
    SchedulerError,
)

# pygraphviz may not be installed. If not, disable
# the graph command.
try:
    from bacass.visualize import viz_graph

    viz_is_enabled = True
except ModuleNotFoundError:
    viz_is_enabled = False

BACASS_DESCRIPTION = """\
bacass {version} -- bacterial genome assembly and annotation workflow.
"""

# Process exit codes.
EXIT_SUCCESS = 0
EXIT_RUN_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130

# CLI flag destination and RunConfig parameter name.
PARAM_ARGS = {
    "assembler": "assembler",
    "assembly_type": "assembly_type",
    "skip_kraken2": "skip_kraken2",
    "kraken2_db": "kraken2_db_path",
    "genome_size": "genome_size",
    "unicycler_args": "unicycler_extra_args",
    "canu_args": "canu_extra_args",
    "prokka_args": "prokka_extra_args",
    "outdir": "output_dir",
    "work_dir": "work_dir",
    "long_reads": "long_reads_enabled",
    "fast5_dir": "fast5_dir",
    "email": "notification_email",
    "skip_annotation": "skip_annotation",
    "skip_pycoqc": "skip_pycoqc",
    "skip_polish": "skip_polish",
    "polish_method": "polish_method",
    "join_policy": "join_policy",
    "max_cpus": "max_cpus",
    "max_memory": "max_memory",
    "stub": "stub",
}


class ArgFormatter(argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter):
    """
    An argument formatter that shows default values and does not reflow description strings.
    """

    pass


def format_timedelta(duration: datetime.timedelta) -> str:
    """
    Format timedelta as a string.
    """
    hours, remainder_seconds = divmod(duration.seconds, 3600)
    minutes, seconds = divmod(remainder_seconds, 60)
    centiseconds = int(duration.microseconds / 10000)
    return "{}:{:02}:{:02}.{:02}".format(
        hours,
        minutes,
        seconds,
        centiseconds,
    )


def get_param_overrides(args: Namespace) -> Dict[str, Any]:
    """
    Run parameters given explicitly on the command line.
    """
    return {
        param: getattr(args, dest)
        for dest, param in PARAM_ARGS.items()
        if getattr(args, dest, None) is not None
    }


def add_param_args(parser: argparse.ArgumentParser) -> None:
    """
    Add run parameter flags. Unset flags leave the configured value in place.
    """
    parser.add_argument("--params-file", help="YAML file of run parameters.")
    parser.add_argument("--assembler", choices=ASSEMBLERS, help="Assembler to use.")
    parser.add_argument("--assembly-type", choices=ASSEMBLY_TYPES, help="Reads to assemble.")
    parser.add_argument(
        "--skip-kraken2", action="store_const", const=True, help="Skip read classification."
    )
    parser.add_argument("--kraken2-db", help="kraken2 database directory or archive.")
    parser.add_argument("--genome-size", help="Expected genome size for canu, e.g. 2.8m.")
    parser.add_argument("--unicycler-args", help="Extra arguments for unicycler.")
    parser.add_argument("--canu-args", help="Extra arguments for canu.")
    parser.add_argument("--prokka-args", help="Extra arguments for prokka.")
    parser.add_argument("-o", "--outdir", help="Output directory.")
    parser.add_argument("-w", "--work-dir", help="Work directory (default: <outdir>/work).")
    parser.add_argument(
        "--no-long-reads",
        dest="long_reads",
        action="store_const",
        const=False,
        help="Disable all long read stages.",
    )
    parser.add_argument("--fast5-dir", help="Directory holding one Fast5 folder per sample.")
    parser.add_argument("--email", help="Send a completion e-mail to this address.")
    parser.add_argument(
        "--skip-annotation", action="store_const", const=True, help="Skip prokka."
    )
    parser.add_argument("--skip-pycoqc", action="store_const", const=True, help="Skip pycoQC.")
    parser.add_argument(
        "--skip-polish", action="store_const", const=True, help="Skip long read polishing."
    )
    parser.add_argument("--polish-method", choices=POLISH_METHODS, help="Polishing tool.")
    parser.add_argument(
        "--join-policy",
        choices=JOIN_POLICIES,
        help="How to treat samples missing one side of the hybrid read join.",
    )
    parser.add_argument("--max-cpus", type=int, help="Total cpus available to tasks.")
    parser.add_argument("--max-memory", help="Total memory available to tasks, e.g. 64.GB.")
    parser.add_argument(
        "--stub",
        action="store_const",
        const=True,
        help="Write placeholder outputs instead of running tools.",
    )


class BacassClient:
    """
    Command-line (CLI) client for running the bacass pipeline.
    """

    def __init__(self, stdout: IO = sys.stdout, stderr: IO = sys.stderr):
        self.stdout: IO = stdout
        self.stderr: IO = stderr

    def execute(self, argv: Optional[List[str]] = None) -> int:
        """
        Execute a command from the command line. Returns the process exit code.
        """
        if argv is None:
            argv = sys.argv

        parser = self.get_command_parser()
        args = parser.parse_args(argv[1:])

        if args.log_level:
            logger.setLevel(log_levels[args.log_level])

        try:
            return args.func(args, argv)
        except (ConfigurationError, MalformedManifestError, GraphError) as error:
            self.display_error(f"Invalid input: {error}")
            return EXIT_INVALID
        except (RunFailedError, SchedulerError, AggregationIncompleteError) as error:
            self.display_error(str(error))
            return EXIT_RUN_FAILED
        except JoinMismatchError as error:
            self.display_error(f"Run aborted: {error}")
            return EXIT_RUN_FAILED
        except (RunCancelledError, KeyboardInterrupt) as error:
            self.display_error(str(error) or "Run cancelled")
            return EXIT_CANCELLED

    def display(self, *messages: Any, newline: bool = True) -> None:
        """
        Write text to standard output.
        """
        try:
            self.stdout.write(" ".join(map(str, messages)))
            if newline:
                self.stdout.write("\n")
        except BrokenPipeError:
            # Gracefully exit, when stdout is closed.
            sys.stderr.close()
            sys.exit()

    def display_error(self, message: str) -> None:
        self.stderr.write(f"bacass: error: {message}\n")

    def get_command_parser(self) -> argparse.ArgumentParser:
        """
        Returns the command line parser.
        """
        parser = argparse.ArgumentParser(
            prog="bacass",
            formatter_class=ArgFormatter,
            description=BACASS_DESCRIPTION.format(version=bacass.__version__),
        )
        parser.add_argument("-c", "--config", help="bacass.ini configuration file.")
        parser.add_argument("-V", "--version", action="store_true", help="Show bacass version.")
        parser.add_argument(
            "--log-level",
            default="INFO",
            choices=log_levels.keys(),
            help="Set bacass logging level.",
        )
        parser.set_defaults(func=self.help_command)
        subparsers = parser.add_subparsers()

        # Help command.
        help_parser = subparsers.add_parser("help", help="Show help information.")
        help_parser.set_defaults(func=self.help_command)

        # Run command.
        run_parser = subparsers.add_parser(
            "run", formatter_class=ArgFormatter, help="Run the pipeline over a sample manifest."
        )
        run_parser.add_argument(
            "manifest", help="Sample manifest (ID,R1,R2,LongFastQ,Fast5,GenomeSize)."
        )
        run_parser.add_argument(
            "--strict",
            action="store_true",
            help="Fail when a report stage produced no fragments.",
        )
        add_param_args(run_parser)
        run_parser.set_defaults(func=self.run_command)

        # Validate command.
        validate_parser = subparsers.add_parser(
            "validate",
            formatter_class=ArgFormatter,
            help="Check the manifest and configuration without running anything.",
        )
        validate_parser.add_argument("manifest", help="Sample manifest.")
        add_param_args(validate_parser)
        validate_parser.set_defaults(func=self.validate_command)

        # Graph command.
        if viz_is_enabled:
            graph_parser = subparsers.add_parser(
                "graph",
                formatter_class=ArgFormatter,
                help="Print the pipeline graph in DOT format.",
            )
            graph_parser.add_argument(
                "--draw", metavar="PATH", help="Render the graph to an image file instead."
            )
            graph_parser.add_argument(
                "--direction",
                default="LR",
                choices=("LR", "TB"),
                help="Direction of the graph layout.",
            )
            add_param_args(graph_parser)
            graph_parser.set_defaults(func=self.graph_command)

        return parser

    def get_run_config(self, args: Namespace) -> RunConfig:
        config = load_config(args.config)
        return get_run_config(
            config, params_file=args.params_file, overrides=get_param_overrides(args)
        )

    def help_command(self, args: Namespace, argv: List[str]) -> int:
        """
        Show help information.
        """
        if args.version:
            # Print version information.
            self.display(bacass.__version__)
        else:
            # Print full help information.
            parser = self.get_command_parser()
            self.display(parser.format_help())
        return EXIT_SUCCESS

    def run_command(self, args: Namespace, argv: List[str]) -> int:
        """
        Performs the run command.
        """
        logger.info(f"bacass :: version {bacass.__version__}")
        config = load_config(args.config)
        params = get_run_config(
            config, params_file=args.params_file, overrides=get_param_overrides(args)
        )
        try:
            result, report = run_pipeline(
                args.manifest, params, config=config, argv=argv, strict=args.strict
            )
        except (RunFailedError, RunCancelledError, JoinMismatchError) as error:
            if error.result:
                self.display_summary(error.result)
            raise

        self.display_summary(result, report)
        return EXIT_SUCCESS

    def validate_command(self, args: Namespace, argv: List[str]) -> int:
        """
        Check the configuration and manifest.
        """
        params = self.get_run_config(args)
        params.check_paths()
        samples = assign_fast5_dirs(load_manifest(args.manifest), params.fast5_dir)
        build_pipeline(params)

        table = Table(title=f"{len(samples)} samples")
        for column in ("ID", "Short reads", "Long reads", "Fast5", "Genome size"):
            table.add_column(column)
        for sample in samples:
            table.add_row(
                sample.id,
                "yes" if sample.has_short_reads else "-",
                "yes" if sample.has_long_reads else "-",
                "yes" if sample.has_fast5 else "-",
                sample.genome_size or "-",
            )
        console = Console(file=self.stdout)
        console.print(table)
        self.display(f"Configuration OK: {params.assembler} ({params.assembly_type})")
        return EXIT_SUCCESS

    def graph_command(self, args: Namespace, argv: List[str]) -> int:
        """
        Print the pipeline graph for the given parameters.
        """
        params = self.get_run_config(args)
        agraph = viz_graph(build_pipeline(params), direction=args.direction)
        if args.draw:
            agraph.draw(args.draw, prog="dot")
            self.display(f"Graph written to {args.draw}")
        else:
            self.display(agraph.string())
        return EXIT_SUCCESS

    def display_summary(self, result: RunResult, report: Optional[RunReport] = None) -> None:
        """
        Display a per task status table of a run.
        """
        table = Table(title="bacass run summary")
        table.add_column("Task")
        for status in (SUCCEEDED, FAILED, SKIPPED):
            table.add_column(status.capitalize(), justify="right")
        for node_name, counts in sorted(result.status_counts().items()):
            table.add_row(
                node_name, *(str(counts.get(status, 0)) for status in (SUCCEEDED, FAILED, SKIPPED))
            )

        console = Console(file=self.stdout)
        console.print(table)
        if result.start_time and result.end_time:
            self.display(f"Duration: {format_timedelta(result.end_time - result.start_time)}")
        if report:
            for message in report.warnings:
                self.display(f"Warning: {message}")


def main(argv: Optional[List[str]] = None) -> None:
    sys.exit(BacassClient().execute(argv))
