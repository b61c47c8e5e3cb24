import os

from setuptools import find_packages, setup

requirements = [
    # cython3 and pyyaml conflicts
    # https://github.com/yaml/pyyaml/issues/724#issuecomment-1638591821
    "pyyaml!=6.0.0,!=5.4.0,!=5.4.1",
    "rich>=13.3.5",
]

extras = {
    "test": ["pytest>=7"],
    "viz": "pygraphviz",
}


def get_version() -> str:
    """
    Get the bacass package version.
    """
    # Technique from: https://packaging.python.org/guides/single-sourcing-package-version/
    basedir = os.path.dirname(__file__)
    module_path = os.path.join(basedir, "bacass", "version.py")
    with open(module_path) as infile:
        for line in infile:
            if line.startswith("version ="):
                _, version, _ = line.split('"', 2)
                return version
    assert False, "Cannot find bacass package version"


setup(
    name="bacass",
    version=get_version(),
    zip_safe=True,
    packages=find_packages(exclude=["bacass.tests"]),
    description="Sample-indexed workflow runner for bacterial genome assembly.",
    long_description="""
bacass runs a bacterial genome assembly workflow over a table of samples.
Each sample's reads are trimmed and quality checked, assembled with unicycler,
canu or miniasm (short, long or hybrid), optionally polished, classified with
kraken2 and annotated with prokka. Per-sample stages run independently while
global stages (QUAST, MultiQC) wait for every sample.

bacass's key features are:

- A static dataflow graph of task nodes connected by per-sample and global
  channels with fan-out, join, collect and mix operators.
- An event-loop scheduler that dispatches task instances as soon as their inputs
  for a sample arrive, and contains failures to the sample they happened in.
- Pluggable executors: a local executor with cpu and memory admission control and
  a stub executor for dry runs.
- A run report with per-sample fragments, skip reasons and content hashes.
    """,
    scripts=["bin/bacass"],
    include_package_data=True,
    python_requires=">= 3.8",
    install_requires=requirements,
    extras_require=extras,
)
