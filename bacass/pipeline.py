"""
Bacterial genome assembly pipeline.

For each sample the pipeline trims and QCs the reads, assembles them with
the selected assembler, optionally polishes long read assemblies, classifies
the reads and annotates the assembly. Global stages compare all assemblies
(QUAST), record tool versions and render a MultiQC report.
"""

import os
import shlex
import shutil
import subprocess
import tarfile
from typing import Any, Dict, List, Optional, Sequence, Tuple

import yaml

from bacass.config import Config, ConfigurationError, RunConfig
from bacass.context import RunContext
from bacass.graph import DataflowGraph, JoinMismatchError
from bacass.logging import logger
from bacass.manifest import ABSENT, SampleRecord, load_manifest
from bacass.notification import send_notification
from bacass.report import RunReport, RunReportAggregator
from bacass.scheduler import RunCancelledError, RunFailedError, RunResult, Scheduler
from bacass.task import Input, TaskContext

# Tool name and the command printing its version.
TOOL_VERSION_COMMANDS = {
    "fastqc": "fastqc --version",
    "skewer": "skewer --version",
    "porechop": "porechop --version",
    "nanoplot": "NanoPlot --version",
    "pycoqc": "pycoQC --version",
    "unicycler": "unicycler --version",
    "canu": "canu --version",
    "minimap2": "minimap2 --version",
    "miniasm": "miniasm -V",
    "racon": "racon --version",
    "nanopolish": "nanopolish --version",
    "medaka": "medaka --version",
    "samtools": "samtools --version",
    "kraken2": "kraken2 --version",
    "quast": "quast.py --version",
    "prokka": "prokka --version",
    "bandage": "Bandage --version",
    "multiqc": "multiqc --version",
}

DB_ARCHIVE_SUFFIXES = (".tar.gz", ".tgz", ".tar")


def quote(path: Any) -> str:
    return shlex.quote(str(path))


def short_read_files(trimmed_dir: str, key: str) -> Tuple[str, str]:
    """
    Paths of the trimmed read pair written by skewer for a sample.
    """
    return (
        os.path.join(trimmed_dir, f"{key}-trimmed-pair1.fastq.gz"),
        os.path.join(trimmed_dir, f"{key}-trimmed-pair2.fastq.gz"),
    )


def get_genome_size(ctx: TaskContext) -> Optional[str]:
    """
    Per-sample genome size from the manifest, else the run parameter.
    """
    if ctx.sample and ctx.sample.genome_size is not ABSENT:
        return ctx.sample.genome_size
    return ctx.params.genome_size


def assign_fast5_dirs(
    samples: Sequence[SampleRecord], fast5_dir: Optional[str]
) -> List[SampleRecord]:
    """
    Give samples without a Fast5 cell the directory `<fast5_dir>/<sample id>` when it exists.
    """
    if not fast5_dir:
        return list(samples)
    assigned = []
    for sample in samples:
        sample_dir = os.path.join(fast5_dir, sample.id)
        if not sample.has_fast5 and os.path.isdir(sample_dir):
            sample = sample.with_fast5_dir(sample_dir)
        assigned.append(sample)
    return assigned


# Read QC and trimming.


def fastqc(ctx: TaskContext) -> str:
    """
    Short read quality control.
    """
    return f"""
    fastqc --quiet --threads {ctx.cpus} --outdir {quote(ctx.outputs["fastqc_reports"])} \\
        {quote(ctx.sample.short_read1)} {quote(ctx.sample.short_read2)}
    """


def skewer(ctx: TaskContext) -> str:
    """
    Adapter and quality trimming of short read pairs.
    """
    out_dir = ctx.outputs["trimmed_short"]
    return f"""
    skewer --quiet -m pe -q 3 -n -z -t {ctx.cpus} \\
        -o {quote(os.path.join(out_dir, ctx.key))} \\
        {quote(ctx.sample.short_read1)} {quote(ctx.sample.short_read2)}
    """


def porechop(ctx: TaskContext) -> str:
    """
    Adapter trimming of long reads.
    """
    return f"""
    porechop --threads {ctx.cpus} -i {quote(ctx.sample.long_read)} \\
        -o {quote(ctx.outputs["trimmed_long"])}
    """


def nanoplot(ctx: TaskContext) -> str:
    return f"""
    NanoPlot --threads {ctx.cpus} --fastq {quote(ctx.sample.long_read)} \\
        --outdir {quote(ctx.outputs["nanoplot_reports"])}
    """


def pycoqc(ctx: TaskContext) -> str:
    """
    Sequencing run QC from the Fast5 files of a sample.
    """
    summary = os.path.join(ctx.work_dir, "sequencing_summary.txt")
    return f"""
    Fast5_to_seq_summary -f {quote(ctx.sample.fast5_dir)} -s {quote(summary)} -t {ctx.cpus}
    pycoQC -f {quote(summary)} -o {quote(ctx.outputs["pycoqc_reports"])}
    """


# Assembly.


def unicycler(ctx: TaskContext) -> str:
    """
    Short, long or hybrid assembly with unicycler.
    """
    short_dir, long_reads = None, None
    if "hybrid_reads" in ctx.inputs:
        short_dir, long_reads = ctx.hybrid_reads
    else:
        short_dir = ctx.inputs.get("short_reads")
        long_reads = ctx.inputs.get("long_reads")

    read_args = []
    if short_dir:
        read1, read2 = short_read_files(short_dir, ctx.key)
        read_args += ["-1", quote(read1), "-2", quote(read2)]
    if long_reads:
        read_args += ["-l", quote(long_reads)]
    if not read_args:
        raise ValueError(f"No reads to assemble for sample {ctx.key}.")

    out_dir = os.path.join(ctx.work_dir, "unicycler")
    return f"""
    unicycler {" ".join(read_args)} --threads {ctx.cpus} --keep 0 \\
        {ctx.params.unicycler_extra_args} -o {quote(out_dir)}
    cp {quote(os.path.join(out_dir, "assembly.fasta"))} {quote(ctx.outputs["unicycler_assembly"])}
    cp {quote(os.path.join(out_dir, "assembly.gfa"))} {quote(ctx.outputs["unicycler_graph"])}
    """


def canu(ctx: TaskContext) -> str:
    """
    Long read assembly with canu.
    """
    out_dir = os.path.join(ctx.work_dir, "canu")
    return f"""
    canu -p {quote(ctx.key)} -d {quote(out_dir)} genomeSize={quote(get_genome_size(ctx))} \\
        maxThreads={ctx.cpus} maxMemory={int(ctx.memory)}g \\
        {ctx.params.canu_extra_args} -nanopore {quote(ctx.long_reads)}
    cp {quote(os.path.join(out_dir, ctx.key + ".contigs.fasta"))} \\
        {quote(ctx.outputs["canu_assembly"])}
    """


def miniasm(ctx: TaskContext) -> str:
    """
    Long read assembly with minimap2 and miniasm, followed by a racon consensus round.
    """
    reads = quote(ctx.long_reads)
    overlaps = quote(os.path.join(ctx.work_dir, "overlaps.paf.gz"))
    unpolished = quote(os.path.join(ctx.work_dir, "unpolished.fasta"))
    alignments = quote(os.path.join(ctx.work_dir, "alignments.paf"))
    graph = quote(ctx.outputs["miniasm_graph"])
    return f"""
    minimap2 -x ava-ont -t {ctx.cpus} {reads} {reads} | gzip -1 > {overlaps}
    miniasm -f {reads} {overlaps} > {graph}
    awk '/^S/{{print ">"$2"\\n"$3}}' {graph} | fold > {unpolished}
    minimap2 -x map-ont -t {ctx.cpus} {unpolished} {reads} > {alignments}
    racon -t {ctx.cpus} {reads} {alignments} {unpolished} > {quote(ctx.outputs["miniasm_assembly"])}
    """


# Polishing.


def nanopolish(ctx: TaskContext) -> str:
    """
    Signal level polishing of a long read assembly using the sample's Fast5 files.
    """
    reads = quote(ctx.long_reads)
    assembly = quote(ctx.assembly)
    bam = quote(os.path.join(ctx.work_dir, "reads.sorted.bam"))
    vcf = quote(os.path.join(ctx.work_dir, "polished.vcf"))
    return f"""
    nanopolish index -d {quote(ctx.sample.fast5_dir)} {reads}
    minimap2 -ax map-ont -t {ctx.cpus} {assembly} {reads} | samtools sort -o {bam}
    samtools index {bam}
    nanopolish variants --consensus -t {ctx.cpus} -r {reads} -b {bam} -g {assembly} -o {vcf}
    nanopolish vcf2fasta --skip-checks -g {assembly} {vcf} \\
        > {quote(ctx.outputs["nanopolish_assembly"])}
    """


def medaka(ctx: TaskContext) -> str:
    """
    Neural network consensus polishing of a long read assembly.
    """
    out_dir = os.path.join(ctx.work_dir, "medaka")
    return f"""
    medaka_consensus -i {quote(ctx.long_reads)} -d {quote(ctx.assembly)} \\
        -o {quote(out_dir)} -t {ctx.cpus}
    cp {quote(os.path.join(out_dir, "consensus.fasta"))} {quote(ctx.outputs["medaka_assembly"])}
    """


# Classification.


def kraken2_db(ctx: TaskContext) -> Dict[str, str]:
    """
    Provide the kraken2 database, unpacking it first when given as an archive.
    """
    db_path = ctx.params.kraken2_db_path
    if not db_path:
        raise ConfigurationError("kraken2_db_path is required unless skip_kraken2 is set.")
    if os.path.isdir(db_path):
        return {"kraken2_db": os.path.abspath(db_path)}
    if not db_path.endswith(DB_ARCHIVE_SUFFIXES):
        raise ValueError(f"kraken2 database must be a directory or tar archive: {db_path}")

    out_dir = ctx.outputs["kraken2_db"]
    with tarfile.open(db_path) as archive:
        archive.extractall(out_dir, filter="data")

    # Archives usually hold a single database directory.
    entries = [os.path.join(out_dir, name) for name in os.listdir(out_dir)]
    dirs = [entry for entry in entries if os.path.isdir(entry)]
    return {"kraken2_db": dirs[0] if len(dirs) == 1 and len(entries) == 1 else out_dir}


def kraken2(ctx: TaskContext) -> str:
    """
    Taxonomic classification of the trimmed reads.

    `reads` is the trimmed short read directory when the sample has short
    reads and the trimmed long read file otherwise.
    """
    if os.path.isdir(ctx.reads):
        read1, read2 = short_read_files(ctx.reads, ctx.key)
        read_args = f"--paired {quote(read1)} {quote(read2)}"
    else:
        read_args = quote(ctx.reads)
    return f"""
    kraken2 --threads {ctx.cpus} --db {quote(ctx.db)} \\
        --report {quote(ctx.outputs["kraken2_reports"])} --output /dev/null \\
        --gzip-compressed {read_args}
    """


# Assembly QC and annotation.


def quast(ctx: TaskContext) -> str:
    """
    Compare the final assemblies of all samples.
    """
    samples = sorted(ctx.assemblies)
    assemblies = " ".join(quote(ctx.assemblies[sample]) for sample in samples)
    return f"""
    quast.py -t {ctx.cpus} -o {quote(ctx.outputs["quast_reports"])} \\
        --labels {quote(",".join(samples))} {assemblies}
    """


def prokka(ctx: TaskContext) -> str:
    return f"""
    prokka --cpus {ctx.cpus} --prefix {quote(ctx.key)} --locustag {quote(ctx.key)} \\
        --outdir {quote(ctx.outputs["prokka_annotation"])} --force \\
        {ctx.params.prokka_extra_args} {quote(ctx.assembly)}
    """


def bandage(ctx: TaskContext) -> str:
    return f"""
    Bandage image {quote(ctx.graph)} {quote(ctx.outputs["bandage_images"])}
    """


# Reporting.


def get_tool_version(command: str) -> str:
    """
    Run a version command and return the first line it prints.
    """
    program = command.split()[0]
    if not shutil.which(program):
        return "not found"
    try:
        proc = subprocess.run(
            shlex.split(command), stdout=subprocess.PIPE, stderr=subprocess.STDOUT, timeout=60
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        return f"error: {error}"
    lines = proc.stdout.decode("utf8", errors="replace").strip().splitlines()
    return lines[0] if lines else "unknown"


def software_versions(ctx: TaskContext) -> None:
    """
    Record the bacass version and the versions of the external tools.
    """
    versions = {
        "bacass": ctx.run.version,
        "tools": {
            tool: get_tool_version(command) for tool, command in TOOL_VERSION_COMMANDS.items()
        },
    }
    with open(ctx.outputs["software_versions"], "w") as out:
        yaml.safe_dump(versions, out, default_flow_style=False, sort_keys=True)


def multiqc(ctx: TaskContext) -> str:
    """
    Aggregate all QC reports into one MultiQC report.
    """
    paths: List[str] = []
    for name in ("fastqc", "nanoplot", "kraken2", "prokka"):
        collected = ctx.inputs.get(name) or {}
        paths.extend(collected[sample] for sample in sorted(collected))
    for name in ("quast", "versions"):
        if ctx.inputs.get(name):
            paths.append(ctx.inputs[name])

    out_dir = os.path.dirname(ctx.outputs["multiqc_report"])
    return f"""
    multiqc --force --outdir {quote(out_dir)} {" ".join(quote(path) for path in paths)}
    """


def long_reads_enabled(params: RunConfig) -> bool:
    return bool(params.long_reads_enabled)


def is_long_read_assembly(params: RunConfig) -> bool:
    return params.assembly_type == "long"


def build_pipeline(params: RunConfig) -> DataflowGraph:
    """
    Build the dataflow graph of the pipeline for a run configuration.

    The graph shape only depends on `assembly_type` (which reads unicycler
    consumes) and `join_policy`. Every other choice is expressed through
    node predicates so disabled stages show up as skipped.
    """
    graph = DataflowGraph("bacass")
    samples = graph.source("samples")
    run = graph.source("run", is_global=True)

    # Read QC and trimming.
    graph.task(
        inputs={"sample": samples},
        outputs={"fastqc_reports": "./"},
        requires=lambda sample: sample.has_short_reads,
        report=True,
        publish_dir="FastQC",
    )(fastqc)
    graph.task(
        inputs={"sample": samples},
        outputs={"trimmed_short": "./"},
        requires=lambda sample: sample.has_short_reads,
        resource_class="medium",
        publish_dir="trimming/shortreads",
    )(skewer)
    graph.task(
        inputs={"sample": samples},
        outputs={"trimmed_long": "{key}.trimmed.fastq.gz"},
        when=long_reads_enabled,
        requires=lambda sample: sample.has_long_reads,
        resource_class="medium",
        publish_dir="trimming/longreads",
    )(porechop)
    graph.task(
        inputs={"sample": samples},
        outputs={"nanoplot_reports": "./"},
        when=long_reads_enabled,
        requires=lambda sample: sample.has_long_reads,
        report=True,
        publish_dir="QC_longreads/NanoPlot",
    )(nanoplot)
    graph.task(
        inputs={"sample": samples},
        outputs={"pycoqc_reports": "{key}_pycoqc.html"},
        when=lambda params: long_reads_enabled(params) and not params.skip_pycoqc,
        requires=lambda sample: sample.has_fast5,
        report=True,
        publish_dir="QC_longreads/PycoQC",
    )(pycoqc)

    # Assembly.
    if params.assembly_type == "hybrid":
        unicycler_inputs = {
            "hybrid_reads": graph.join(
                "hybrid_reads", "trimmed_short", "trimmed_long", policy=params.join_policy
            )
        }
    elif params.assembly_type == "long":
        unicycler_inputs = {"long_reads": "trimmed_long"}
    else:
        unicycler_inputs = {"short_reads": "trimmed_short"}

    graph.task(
        inputs=unicycler_inputs,
        outputs={
            "unicycler_assembly": "{key}_assembly.fasta",
            "unicycler_graph": "{key}_assembly.gfa",
        },
        when=lambda params: params.assembler == "unicycler",
        resource_class="large",
        required=True,
        publish_dir="Unicycler",
    )(unicycler)
    graph.task(
        inputs={"sample": samples, "long_reads": "trimmed_long"},
        outputs={"canu_assembly": "{key}_assembly.fasta"},
        when=lambda params: params.assembler == "canu",
        resource_class="large",
        required=True,
        publish_dir="Canu",
    )(canu)
    graph.task(
        inputs={"long_reads": "trimmed_long"},
        outputs={"miniasm_assembly": "{key}_assembly.fasta", "miniasm_graph": "{key}_assembly.gfa"},
        when=lambda params: params.assembler == "miniasm",
        resource_class="large",
        required=True,
        publish_dir="Miniasm",
    )(miniasm)
    graph.mix("assembly", ["unicycler_assembly", "canu_assembly", "miniasm_assembly"])
    graph.mix("assembly_graph", ["unicycler_graph", "miniasm_graph"])

    # Polishing of long read assemblies.
    graph.task(
        inputs={"sample": samples, "assembly": "assembly", "long_reads": "trimmed_long"},
        outputs={"nanopolish_assembly": "{key}_polished.fasta"},
        when=lambda params: is_long_read_assembly(params)
        and not params.skip_polish
        and params.polish_method == "nanopolish",
        requires=lambda sample: sample.has_fast5,
        resource_class="large",
        publish_dir="Nanopolish",
    )(nanopolish)
    graph.task(
        inputs={"assembly": "assembly", "long_reads": "trimmed_long"},
        outputs={"medaka_assembly": "{key}_polished.fasta"},
        when=lambda params: is_long_read_assembly(params)
        and not params.skip_polish
        and params.polish_method == "medaka",
        resource_class="large",
        publish_dir="Medaka",
    )(medaka)
    graph.mix("final_assembly", ["nanopolish_assembly", "medaka_assembly", "assembly"])

    # Classification.
    graph.task(
        inputs={"run": run},
        outputs={"kraken2_db": "db/"},
        when=lambda params: not params.skip_kraken2,
        script=False,
        publish_dir="Kraken2",
    )(kraken2_db)
    graph.task(
        inputs={
            "reads": graph.mix("classify_reads", ["trimmed_short", "trimmed_long"]),
            "db": "kraken2_db",
        },
        outputs={"kraken2_reports": "{key}.kraken2.report.txt"},
        when=lambda params: not params.skip_kraken2,
        resource_class="large",
        report=True,
        publish_dir="Kraken2",
    )(kraken2)

    # Assembly QC and annotation.
    graph.task(
        inputs={"assemblies": graph.collect("assemblies", "final_assembly", allow_empty=False)},
        outputs={"quast_reports": "./"},
        resource_class="medium",
        report=True,
        publish_dir="QUAST",
    )(quast)
    graph.task(
        inputs={"assembly": "final_assembly"},
        outputs={"prokka_annotation": "./"},
        when=lambda params: not params.skip_annotation,
        resource_class="medium",
        report=True,
        publish_dir="Prokka",
    )(prokka)
    graph.task(
        inputs={"graph": "assembly_graph"},
        outputs={"bandage_images": "{key}_assembly.png"},
        publish_dir="Bandage",
    )(bandage)

    # Reporting.
    graph.task(
        inputs={"run": run},
        outputs={"software_versions": "software_versions.yml"},
        script=False,
        report=True,
        publish_dir="pipeline_info",
    )(software_versions)
    graph.task(
        inputs={
            "fastqc": graph.collect("all_fastqc", "fastqc_reports"),
            "nanoplot": graph.collect("all_nanoplot", "nanoplot_reports"),
            "kraken2": graph.collect("all_kraken2", "kraken2_reports"),
            "prokka": graph.collect("all_prokka", "prokka_annotation"),
            "quast": Input("quast_reports", optional=True),
            "versions": Input("software_versions", optional=True),
        },
        outputs={"multiqc_report": "multiqc_report.html"},
        report=True,
        publish_dir="MultiQC",
    )(multiqc)

    return graph.freeze()


def run_pipeline(
    manifest_path: str,
    params: RunConfig,
    config: Optional[Config] = None,
    scheduler: Optional[Scheduler] = None,
    argv: Optional[List[str]] = None,
    strict: bool = False,
) -> Tuple[RunResult, RunReport]:
    """
    Run the pipeline over the samples of a manifest and write the run report.

    Manifest and configuration problems raise before any task is dispatched.
    The report is written even when the run fails or is cancelled. In strict
    mode, AggregationIncompleteError is raised after the report is written.
    """
    config = config or Config()
    params.validate()
    params.check_paths()
    samples = assign_fast5_dirs(load_manifest(manifest_path), params.fast5_dir)

    context = RunContext.create(
        params,
        samples=samples,
        config=config,
        manifest_path=os.path.abspath(manifest_path),
        argv=argv,
    )
    graph = build_pipeline(params)
    scheduler = scheduler or Scheduler(config=config)
    aggregator = RunReportAggregator(context, graph, strict=strict)
    aggregator.attach(scheduler)

    logger.info(
        f"Assembling {len(samples)} samples with {params.assembler} ({params.assembly_type})"
    )
    try:
        result = scheduler.run(graph, context)
    except (RunFailedError, RunCancelledError, JoinMismatchError) as error:
        if error.result:
            write_report(aggregator, error.result, config)
        raise

    report = write_report(aggregator, result, config)
    aggregator.check()
    return result, report


def write_report(
    aggregator: RunReportAggregator, result: RunResult, config: Optional[Config] = None
) -> RunReport:
    """
    Build and write the run report, then send the completion e-mail.
    """
    report = aggregator.build(result)
    aggregator.write(report)
    send_notification(aggregator.context, report, config)
    return report
