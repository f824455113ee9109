"""
Predict orthologous proteins from RNA-seq reads by coding-frame extraction and homology search.

Steps, per sample:

1. Optional conversion of aligned BAM files to FASTQ (samtools fastq)
2. Read QC (FastQC) and adapter/quality trimming (fastp)
3. Putative protein-coding read extraction against a peptide bloom filter
   (khtools extract-coding), once per molecule alphabet
4. Homology search of the translated coding reads (diamond blastp)

Shared steps:

- Peptide bloom filter per molecule (khtools index), unless
  ``--bloom_filter`` gives a pre-built one
- Diamond database: given with ``--diamond_database``, built from
  ``--proteome_fasta``, or built from a downloaded RefSeq release
  (``--refseq_release``)
- MultiQC report over all QC outputs (``--skip_multiqc`` to disable)

Example:
    seqflow run predictorthologs --reads 'data/*_R{1,2}.fastq.gz' \\
        --peptides ref/peptides.fa --proteome_fasta ref/proteome.fa
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from seqflow.core.conditions import AllOf, Not, ParamSet, ParamTrue
from seqflow.core.exceptions import MissingParameterError
from seqflow.core.flow import Flow
from seqflow.models.task import (
    ErrorStrategy,
    InputPort,
    OutputPort,
    ResourceHints,
    TaskSpec,
)

logger = logging.getLogger(__name__)

CONTAINER = "czbiohub/predictorthologs:dev"

MOLECULES = ("protein", "dayhoff", "hp")

READ_SUFFIXES = (".fastq.gz", ".fq.gz", ".fastq", ".fq")


class Params(BaseModel):
    """Parameters of the predictorthologs pipeline."""

    reads: str | None = Field(default=None, description="Glob of FASTQ files, e.g. 'data/*_R{1,2}.fastq.gz'")
    csv: Path | None = Field(default=None, description="Samplesheet with sample_id,read1,read2 columns")
    bam: str | None = Field(default=None, description="Glob of aligned BAM files")
    single_end: bool = Field(default=False, description="Reads are single-end")

    molecules: tuple[str, ...] = Field(
        default=("protein", "dayhoff"),
        description="Molecule alphabets to extract coding reads in",
    )
    peptides: Path | None = Field(default=None, description="Reference peptide FASTA for the bloom filter")
    bloom_filter: Path | None = Field(default=None, description="Pre-built khtools bloom filter")
    tablesize: str = Field(default="1e8", description="khtools index table size")
    jaccard_threshold: float | None = Field(default=None, ge=0, le=1)

    diamond_database: Path | None = Field(default=None, description="Pre-built diamond database (.dmnd)")
    proteome_fasta: Path | None = Field(default=None, description="Protein FASTA to build the diamond database")
    refseq_release: str | None = Field(
        default=None,
        description="NCBI RefSeq release section to download, e.g. 'vertebrate_mammalian'",
    )

    skip_multiqc: bool = False

    model_config = {"frozen": True}

    @field_validator("molecules", mode="before")
    @classmethod
    def split_molecules(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [m.strip() for m in value.split(",") if m.strip()]
        return value

    @field_validator("molecules")
    @classmethod
    def check_molecules(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        unknown = [m for m in value if m not in MOLECULES]
        if unknown:
            msg = f"unknown molecule(s) {', '.join(unknown)}; choose from {', '.join(MOLECULES)}"
            raise ValueError(msg)
        if not value:
            msg = "at least one molecule is required"
            raise ValueError(msg)
        return value


# =============================================================================
# Task specifications
# =============================================================================

SAMTOOLS_FASTQ = TaskSpec(
    name="SAMTOOLS_FASTQ",
    inputs=(InputPort.tuple_of(InputPort.val("sample_id"), InputPort.path("bam")),),
    outputs=(OutputPort.tuple_of(OutputPort.val("{sample_id}"), OutputPort.path("{sample_id}.fastq.gz")),),
    command=(
        "samtools fastq --threads {task.cpus} -T CB,CR,UB,UR {bam} "
        "| gzip -c > {sample_id}.fastq.gz"
    ),
    resources=ResourceHints(cpus=2, memory="4 GB", time="4h"),
    label="process_low",
    tag="{sample_id}",
    container=CONTAINER,
    tools=("samtools", "gzip"),
)

FASTQC = TaskSpec(
    name="FASTQC",
    inputs=(InputPort.tuple_of(InputPort.val("sample_id"), InputPort.path("reads")),),
    outputs=(OutputPort.path("*_fastqc.{{zip,html}}", emit="reports"),),
    command="fastqc --quiet --threads {task.cpus} {reads}",
    resources=ResourceHints(cpus=2, memory="4 GB", time="2h"),
    label="process_medium",
    tag="{sample_id}",
    publish_dir="fastqc",
    container=CONTAINER,
    tools=("fastqc",),
)


def fastp_spec(single_end: bool) -> TaskSpec:
    """fastp trimming for single-end or paired-end reads."""
    if single_end:
        io = "--in1 {reads} --out1 {sample_id}.trimmed.fastq.gz"
    else:
        io = (
            "--in1 ${{reads[0]}} --in2 ${{reads[1]}} "
            "--out1 {sample_id}_R1.trimmed.fastq.gz --out2 {sample_id}_R2.trimmed.fastq.gz"
        )
    return TaskSpec(
        name="FASTP",
        inputs=(InputPort.tuple_of(InputPort.val("sample_id"), InputPort.path("reads")),),
        outputs=(
            OutputPort.tuple_of(
                OutputPort.val("{sample_id}"),
                OutputPort.path("{sample_id}*.trimmed.fastq.gz"),
                emit="reads",
            ),
            OutputPort.path("{sample_id}.fastp.json", emit="json"),
        ),
        command=(
            "reads=({reads})\n"
            f"fastp {io} "
            "--thread {task.cpus} "
            "--json {sample_id}.fastp.json --html {sample_id}.fastp.html"
        ),
        resources=ResourceHints(cpus=2, memory="6 GB", time="4h"),
        label="process_medium",
        tag="{sample_id}",
        publish_dir="fastp",
        container=CONTAINER,
        tools=("fastp",),
    )


MULTIQC = TaskSpec(
    name="MULTIQC",
    inputs=(InputPort.path("reports"),),
    outputs=(
        OutputPort.path("multiqc_report.html", emit="report"),
        OutputPort.path("multiqc_data", optional=True, emit="data"),
    ),
    command="multiqc --force .",
    resources=ResourceHints(cpus=1, memory="2 GB", time="1h"),
    label="process_low",
    publish_dir="multiqc",
    error_strategy=ErrorStrategy.ignore(),
    container=CONTAINER,
    tools=("multiqc",),
)

KHTOOLS_INDEX = TaskSpec(
    name="KHTOOLS_INDEX",
    inputs=(
        InputPort.path("peptides"),
        InputPort.val("tablesize"),
        InputPort.each("molecule"),
    ),
    outputs=(
        OutputPort.tuple_of(
            OutputPort.val("{molecule}"),
            OutputPort.path("peptides__molecule-{molecule}.bloomfilter"),
            emit="bloom_filter",
        ),
    ),
    command=(
        "khtools index --tablesize {tablesize} --molecule {molecule} "
        "--save-as peptides__molecule-{molecule}.bloomfilter {peptides}"
    ),
    resources=ResourceHints(cpus=1, memory="6 GB", time="8h"),
    label="process_high_memory",
    tag="{molecule}",
    publish_dir="khtools/index",
    error_strategy=ErrorStrategy.retry(1, resource_scale=2.0),
    container=CONTAINER,
    tools=("khtools",),
)

EXTRACT_CODING = TaskSpec(
    name="EXTRACT_CODING",
    inputs=(
        InputPort.tuple_of(
            InputPort.val("sample_id"),
            InputPort.path("reads"),
            InputPort.val("molecule"),
            InputPort.path("bloom_filter"),
        ),
        InputPort.val("jaccard_option"),
    ),
    outputs=(
        OutputPort.tuple_of(
            OutputPort.val("{sample_id}"),
            OutputPort.val("{molecule}"),
            OutputPort.path("{sample_id}__molecule-{molecule}__coding_reads_peptides.fasta"),
            emit="peptides",
        ),
        OutputPort.path("{sample_id}__molecule-{molecule}__summary.json", emit="summary"),
    ),
    command=(
        "khtools extract-coding --molecule {molecule} {jaccard_option}"
        "--coding-nucleotide-fasta {sample_id}__molecule-{molecule}__coding_reads_nucleotides.fasta "
        "--csv {sample_id}__molecule-{molecule}__coding_scores.csv "
        "--json-summary {sample_id}__molecule-{molecule}__summary.json "
        "--peptides-are-bloom-filter {bloom_filter} {reads} "
        "> {sample_id}__molecule-{molecule}__coding_reads_peptides.fasta"
    ),
    resources=ResourceHints(cpus=1, memory="4 GB", time="12h"),
    label="process_medium",
    tag="{sample_id}:{molecule}",
    publish_dir="khtools/extract_coding",
    error_strategy=ErrorStrategy.retry(2, backoff_seconds=5.0, resource_scale=1.5),
    container=CONTAINER,
    tools=("khtools",),
)

REFSEQ_DOWNLOAD = TaskSpec(
    name="REFSEQ_DOWNLOAD",
    inputs=(InputPort.val("release"),),
    outputs=(OutputPort.path("refseq_{release}.protein.faa.gz"),),
    command=(
        "wget --quiet --recursive --no-directories --accept '*.protein.faa.gz' "
        "ftp://ftp.ncbi.nlm.nih.gov/refseq/release/{release}/\n"
        "cat *.protein.faa.gz > refseq_{release}.protein.faa.gz\n"
        "find . -maxdepth 1 -name '*.protein.faa.gz' ! -name 'refseq_*' -delete"
    ),
    resources=ResourceHints(cpus=1, memory="2 GB", time="12h"),
    label="process_low",
    tag="{release}",
    error_strategy=ErrorStrategy.retry(3, backoff_seconds=30.0),
    container=CONTAINER,
    tools=("wget",),
)

DIAMOND_MAKEDB = TaskSpec(
    name="DIAMOND_MAKEDB",
    inputs=(InputPort.path("proteome"),),
    outputs=(OutputPort.path("proteome.dmnd"),),
    command="diamond makedb --threads {task.cpus} --in {proteome} --db proteome",
    resources=ResourceHints(cpus=2, memory="6 GB", time="8h"),
    label="process_high",
    publish_dir="diamond/database",
    container=CONTAINER,
    tools=("diamond",),
)

DIAMOND_BLASTP = TaskSpec(
    name="DIAMOND_BLASTP",
    inputs=(
        InputPort.tuple_of(
            InputPort.val("sample_id"),
            InputPort.val("molecule"),
            InputPort.path("peptides"),
            InputPort.path("database"),
        ),
    ),
    outputs=(OutputPort.path("{sample_id}__diamond_blastp.tsv", emit="hits"),),
    command=(
        "diamond blastp --threads {task.cpus} --db {database} --query {peptides} "
        "--outfmt 6 qseqid sseqid pident length evalue bitscore "
        "--max-target-seqs 1 --out {sample_id}__diamond_blastp.tsv"
    ),
    resources=ResourceHints(cpus=2, memory="6 GB", time="12h"),
    label="process_high",
    tag="{sample_id}",
    publish_dir="diamond/blastp",
    container=CONTAINER,
    tools=("diamond",),
)


# =============================================================================
# Profiles (analogous to the pipeline's CI test runs)
# =============================================================================

TEST_DATA = "test-datasets/predictorthologs"

_TEST_LIMITS = {"max_cpus": 2, "max_memory": "6 GB", "max_time": "48h"}

PROFILES: dict[str, Any] = {
    "docker": {
        "executor": {"docker": {"enabled": True}},
    },
    "test": {
        "limits": _TEST_LIMITS,
        "params": {
            "reads": f"{TEST_DATA}/reads/*_R{{1,2}}.fastq.gz",
            "peptides": f"{TEST_DATA}/reference/peptides.fa",
            "proteome_fasta": f"{TEST_DATA}/reference/proteome.fa",
            "molecules": "protein,dayhoff",
            "tablesize": "1e4",
        },
    },
    "test_bam": {
        "limits": _TEST_LIMITS,
        "params": {
            "bam": f"{TEST_DATA}/bam/*.bam",
            "single_end": True,
            "peptides": f"{TEST_DATA}/reference/peptides.fa",
            "proteome_fasta": f"{TEST_DATA}/reference/proteome.fa",
            "molecules": "protein",
            "tablesize": "1e4",
        },
    },
    "test_existing_database": {
        "limits": _TEST_LIMITS,
        "params": {
            "reads": f"{TEST_DATA}/reads/*_R{{1,2}}.fastq.gz",
            "bloom_filter": f"{TEST_DATA}/reference/peptides__molecule-protein.bloomfilter",
            "diamond_database": f"{TEST_DATA}/reference/proteome.dmnd",
            "molecules": "protein",
        },
    },
    "test_download_refseq": {
        "limits": _TEST_LIMITS,
        "params": {
            "reads": f"{TEST_DATA}/reads/*_R{{1,2}}.fastq.gz",
            "peptides": f"{TEST_DATA}/reference/peptides.fa",
            "refseq_release": "mitochondrion",
            "molecules": "protein",
            "tablesize": "1e4",
        },
    },
}


# =============================================================================
# Wiring
# =============================================================================


def sample_name(path: Path) -> str:
    """Sample id of a single-end read or BAM file name.

    Example:
        >>> sample_name(Path("s1.fastq.gz"))
        's1'
    """
    name = path.name
    for suffix in (*READ_SUFFIXES, ".bam"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return path.stem


def _flatten_paths(items: Any) -> list[Path]:
    found: list[Path] = []
    if isinstance(items, Path):
        found.append(items)
    elif isinstance(items, (list, tuple)):
        for item in items:
            found.extend(_flatten_paths(item))
    return found


def _input_reads(flow: Flow, p: Params):
    """Channel of ``(sample_id, [reads...])`` from whichever input was given."""
    sources = [name for name in ("reads", "csv", "bam") if getattr(p, name)]
    if not sources:
        raise MissingParameterError("reads", "one of --reads, --csv or --bam is required")
    if len(sources) > 1:
        logger.warning("Several read inputs given (%s); using all of them", ", ".join(sources))

    channels = []
    if p.csv:
        channels.append(flow.from_samplesheet(p.csv, param_name="csv"))
    if p.reads:
        if p.single_end:
            channels.append(
                flow.from_path(p.reads, param_name="reads").map(lambda f: (sample_name(f), [f]))
            )
        else:
            channels.append(flow.from_file_pairs(p.reads, param_name="reads"))
    if p.bam:
        bams = flow.from_path(p.bam, param_name="bam").map(lambda f: (sample_name(f), f))
        converted = flow.process(SAMTOOLS_FASTQ, bams)
        channels.append(converted.out.map(lambda item: (item[0], [item[1]])))

    raw = channels[0].mix(*channels[1:]) if len(channels) > 1 else channels[0]
    return raw.if_empty(error="No input reads found")


def build(flow: Flow) -> None:
    p: Params = flow.params  # type: ignore[assignment]
    single_end = p.single_end or bool(p.bam and not p.reads and not p.csv)

    raw_for_qc, raw_for_trim = _input_reads(flow, p).into(2)

    # QC and trimming
    fastqc = flow.process(FASTQC, raw_for_qc)
    fastp = flow.process(fastp_spec(single_end), raw_for_trim)

    qc_reports = (
        fastqc.reports.mix(fastp.json)
        .collect()
        .map(_flatten_paths)
    )
    flow.process(MULTIQC, qc_reports, when=Not(ParamTrue("skip_multiqc")))

    # Peptide bloom filter, one per molecule
    index = flow.process(
        KHTOOLS_INDEX,
        p.peptides,
        p.tablesize,
        list(p.molecules),
        when=AllOf((ParamSet("peptides"), Not(ParamSet("bloom_filter")))),
    )
    if p.bloom_filter:
        provided = flow.from_list(
            [(m, p.bloom_filter) for m in p.molecules], name="bloom_filter"
        )
    else:
        provided = flow.disabled("bloom_filter")
    bloom_filters = index.bloom_filter.mix(provided).if_empty(
        error="No bloom filter: give --peptides to build one or --bloom_filter to use an existing one"
    )

    # Coding reads per sample and molecule
    jaccard = f"--jaccard-threshold {p.jaccard_threshold} " if p.jaccard_threshold is not None else ""
    coding = flow.process(EXTRACT_CODING, fastp.reads.combine(bloom_filters), jaccard)

    # Diamond database
    makedb = flow.process(
        DIAMOND_MAKEDB,
        p.proteome_fasta,
        when=AllOf((ParamSet("proteome_fasta"), Not(ParamSet("diamond_database")))),
    )
    refseq = flow.process(
        REFSEQ_DOWNLOAD,
        p.refseq_release,
        when=AllOf((
            ParamSet("refseq_release"),
            Not(ParamSet("diamond_database")),
            Not(ParamSet("proteome_fasta")),
        )),
    )
    makedb_refseq = flow.process(DIAMOND_MAKEDB, refseq.out, name="DIAMOND_MAKEDB_REFSEQ")
    if p.diamond_database:
        existing = flow.value(p.diamond_database, name="diamond_database")
    else:
        existing = flow.disabled("diamond_database")
    database = existing.mix(makedb.out, makedb_refseq.out).if_empty(
        error="No diamond database: give --diamond_database, or --proteome_fasta or --refseq_release to build one"
    )

    # Homology search of translated protein-alphabet reads
    protein_peptides = coding.peptides.filter(lambda item: item[1] == "protein")
    blastp = flow.process(DIAMOND_BLASTP, protein_peptides.combine(database))

    flow.on_complete(log_results, collect={"hits": blastp.hits, "summaries": coding.summary})


def log_results(summary: Any, collected: dict[str, list[Any]]) -> None:
    hits = collected.get("hits", [])
    summaries = collected.get("summaries", [])
    logger.info(
        "predictorthologs: %d coding-read summar%s, %d diamond result file(s)",
        len(summaries), "y" if len(summaries) == 1 else "ies", len(hits),
    )
