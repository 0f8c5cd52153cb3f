#!/usr/bin/env python3
"""
DGE Pipeline CLI

Command-line interface for the paired treated/control differential
expression analysis. Provides the full analysis run plus utilities for
merging count files, validating samplesheets and rebuilding the report.
"""

import typer
import sys
from pathlib import Path
from typing import Optional, List
from rich.console import Console
import logging

from . import __version__
from .config import AnalysisConfig
from .pipeline import run_analysis
from .quantify import merge_count_files
from .report import generate_final_report
from .utils import setup_logging

app = typer.Typer(
    name="dge_pipeline",
    help="DGE Pipeline - Differential expression report for paired treated/control RNA-seq",
    add_completion=False,
)

console = Console()

# Global options
def version_callback(value: bool):
    if value:
        console.print(f"DGE Pipeline v{__version__}")
        raise typer.Exit()

def verbose_callback(value: bool):
    if value:
        setup_logging(level=logging.DEBUG)
    else:
        setup_logging(level=logging.INFO)

@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose",
        callback=verbose_callback,
        help="Enable verbose logging"
    ),
):
    """DGE Pipeline CLI"""
    pass

@app.command()
def run(
    config_file: Path = typer.Argument(..., help="YAML analysis config"),
    output_dir: Optional[Path] = typer.Option(None, help="Override the configured output directory"),
):
    """Run the full differential expression analysis."""
    console.print("[bold blue]Running differential expression analysis[/bold blue]")

    try:
        config = AnalysisConfig.from_yaml(config_file)
        if output_dir is not None:
            config.output_dir = output_dir
        metrics = run_analysis(config)

        summary = metrics['de']['QLF']
        console.print("[bold green]Analysis completed successfully![/bold green]")
        console.print(
            f"{metrics['filtering']['genes_after']} genes tested: "
            f"{summary['Up']} up, {summary['Down']} down"
        )
        console.print(f"Results saved to: {config.output_dir}")

    except Exception as e:
        console.print(f"[bold red]Error in analysis: {e}[/bold red]")
        sys.exit(1)

@app.command()
def merge_counts(
    count_files: List[Path] = typer.Argument(..., help="Per-sample count files"),
    output_file: Path = typer.Option("merged_counts.tsv", help="Output TSV file"),
    count_column: int = typer.Option(1, help="Zero-based count column in each file"),
):
    """Merge per-sample count files into one gene x sample matrix."""
    console.print(f"[bold blue]Merging {len(count_files)} count files[/bold blue]")

    try:
        merged = merge_count_files(count_files, output_file=output_file, count_column=count_column)
        console.print("[bold green]Count files merged successfully![/bold green]")
        console.print(f"{merged.shape[0]} genes x {merged.shape[1]} samples saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Error merging count files: {e}[/bold red]")
        sys.exit(1)

@app.command()
def report(
    results_dir: Path = typer.Argument(..., help="Output directory of a finished run"),
    output_file: Optional[Path] = typer.Option(None, help="Output HTML report file"),
    title: str = typer.Option("Differential Expression Report", help="Report title"),
):
    """Regenerate the HTML report from a finished run."""
    console.print("[bold blue]Generating report[/bold blue]")

    try:
        report_file = generate_final_report(
            results_dir=results_dir,
            output_file=output_file,
            title=title
        )
        console.print("[bold green]Report generated successfully![/bold green]")
        console.print(f"Report saved to: {report_file}")

    except Exception as e:
        console.print(f"[bold red]Error generating report: {e}[/bold red]")
        sys.exit(1)

@app.command()
def validate_samplesheet(
    samplesheet: Path = typer.Argument(..., help="Samplesheet file to validate"),
    output_file: Optional[Path] = typer.Option(None, help="Output validated samplesheet"),
    treatment_column: str = typer.Option("treatment", help="Column holding the treatment label"),
    block_column: str = typer.Option("individual", help="Column holding the originating individual"),
):
    """Validate a samplesheet and optionally write it with resolved paths."""
    console.print("[bold blue]Validating samplesheet[/bold blue]")

    try:
        from .utils import validate_samplesheet

        valid_samples = validate_samplesheet(
            samplesheet, treatment_column=treatment_column, block_column=block_column
        )
        console.print("[bold green]Samplesheet is valid![/bold green]")
        console.print(f"Found {len(valid_samples)} valid samples")

        if output_file:
            valid_samples.to_csv(output_file, sep='\t', index=False)
            console.print(f"Validated samplesheet saved to: {output_file}")

    except Exception as e:
        console.print(f"[bold red]Samplesheet validation failed: {e}[/bold red]")
        sys.exit(1)

if __name__ == "__main__":
    app()
