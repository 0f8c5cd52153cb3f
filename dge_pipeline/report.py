"""
HTML report generator.

Collects the tables, metrics and plots written by a pipeline run and
renders them into a single self-contained HTML file with Jinja2.
"""

import base64
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Any, Optional
import pandas as pd
from jinja2 import Environment, FileSystemLoader, select_autoescape

from . import __version__
from .utils import load_metrics_json, validate_directory_exists

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / 'templates'

PLOT_TITLES = {
    'library_sizes': 'Library sizes',
    'log_cpm_density': 'log-CPM distributions before and after filtering',
    'mds': 'MDS of samples',
    'pca': 'PCA of samples',
    'bcv': 'Biological coefficient of variation',
    'ql_dispersion': 'Quasi-likelihood dispersion',
    'md_qlf': 'MD plot (QL F-test)',
    'md_treat': 'MD plot (fold-change threshold test)',
    'volcano_qlf': 'Volcano plot (QL F-test)',
    'volcano_treat': 'Volcano plot (fold-change threshold test)',
    'heatmap_qlf': 'Top genes heatmap',
}

class ReportGenerator:
    """Generate the HTML report for one analysis run."""

    def __init__(self, output_dir: Path, template_dir: Optional[Path] = None):
        """
        Initialize report generator.

        Args:
            output_dir: Directory to save the generated report
            template_dir: Directory containing Jinja2 templates (default: packaged templates)
        """
        self.template_dir = Path(template_dir) if template_dir is not None else DEFAULT_TEMPLATE_DIR
        self.output_dir = validate_directory_exists(output_dir, create=True)

        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )
        self.env.filters['round'] = self._round_filter
        self.env.filters['sci'] = self._sci_filter

    def _round_filter(self, value: float, digits: int = 2) -> float:
        """Custom Jinja2 filter for rounding numbers."""
        try:
            return round(float(value), digits)
        except (ValueError, TypeError):
            return value

    def _sci_filter(self, value: float, digits: int = 2) -> str:
        """Custom Jinja2 filter for p-values and FDRs."""
        try:
            return f"{float(value):.{digits}e}"
        except (ValueError, TypeError):
            return str(value)

    def load_analysis_data(self, results_dir: Path, top_n: int = 20) -> Dict[str, Any]:
        """
        Load and consolidate the outputs of a pipeline run.

        Args:
            results_dir: Output directory of the run
            top_n: Rows shown per table

        Returns:
            Dictionary passed to the template as ``analysis_data``
        """
        results_dir = validate_directory_exists(results_dir)

        data = {
            'timestamp': datetime.now().strftime('%Y-%m-%d %H:%M:%S'),
            'pipeline_version': __version__,
            'metrics': {},
            'de_summary': [],
            'de_tables': [],
            'enrichment_tables': [],
            'plots': [],
            'interactive': [],
            'output_files': [],
        }

        metrics_file = results_dir / 'metrics.json'
        if metrics_file.exists():
            data['metrics'] = load_metrics_json(metrics_file)
        else:
            logger.warning(f"No metrics.json in {results_dir}")

        summary_file = results_dir / 'de' / 'de_summary.csv'
        if summary_file.exists():
            summary = pd.read_csv(summary_file, index_col=0)
            data['de_summary'] = [
                {'test': test, **{k: int(v) for k, v in summary[test].items()}}
                for test in summary.columns
            ]

        for test, title in [('qlf', 'QL F-test'), ('treat', 'Fold-change threshold test')]:
            table_file = results_dir / 'de' / f'top_genes_{test}.csv'
            if table_file.exists():
                data['de_tables'].append({
                    'title': title,
                    'path': str(table_file.relative_to(results_dir)),
                    'rows': self._table_rows(table_file, top_n),
                })

        enrichment_dir = results_dir / 'enrichment'
        if enrichment_dir.exists():
            for table_file in sorted(enrichment_dir.glob('*.csv')):
                data['enrichment_tables'].append({
                    'title': table_file.stem.replace('_', ' '),
                    'path': str(table_file.relative_to(results_dir)),
                    'rows': self._table_rows(table_file, top_n),
                })

        plot_dir = results_dir / 'plots'
        if plot_dir.exists():
            for plot_file in sorted(plot_dir.glob('*.png'), key=self._plot_order):
                data['plots'].append({
                    'title': PLOT_TITLES.get(plot_file.stem, plot_file.stem.replace('_', ' ').title()),
                    'src': self._embed_png(plot_file),
                })
            for html_file in sorted(plot_dir.glob('*.html')):
                data['interactive'].append({
                    'title': html_file.stem.replace('_', ' ').title(),
                    'path': str(html_file.relative_to(results_dir)),
                })

        data['output_files'] = self._catalog_output_files(results_dir)
        return data

    def _plot_order(self, plot_file: Path) -> int:
        order = list(PLOT_TITLES)
        return order.index(plot_file.stem) if plot_file.stem in order else len(order)

    def _table_rows(self, table_file: Path, top_n: int) -> List[Dict[str, Any]]:
        table = pd.read_csv(table_file).head(top_n)
        return table.where(pd.notna(table), '').to_dict(orient='records')

    def _embed_png(self, plot_file: Path) -> str:
        with open(plot_file, 'rb') as f:
            encoded = base64.b64encode(f.read()).decode('ascii')
        return f"data:image/png;base64,{encoded}"

    def _catalog_output_files(self, results_dir: Path) -> List[Dict[str, str]]:
        """List tables written by the run, with a short description each."""
        descriptions = {
            '.csv': 'Comma-separated values table',
            '.tsv': 'Tab-separated values table',
            '.json': 'Run metrics',
            '.html': 'Interactive plot',
        }
        files = []
        for path in sorted(results_dir.rglob('*')):
            if path.is_file() and path.suffix in descriptions and path.name != 'report.html':
                files.append({
                    'path': str(path.relative_to(results_dir)),
                    'description': descriptions[path.suffix],
                })
        return files

    def generate_report(
        self,
        analysis_data: Dict[str, Any],
        template_name: str = 'report.html',
        output_name: str = 'report.html',
        title: str = 'Differential Expression Report'
    ) -> Path:
        """
        Generate HTML report from analysis data.

        Args:
            analysis_data: Output of :meth:`load_analysis_data`
            template_name: Name of Jinja2 template to use
            output_name: Output HTML file name
            title: Report title

        Returns:
            Path to generated report
        """
        template = self.env.get_template(template_name)
        html_content = template.render(analysis_data=analysis_data, title=title)

        output_path = self.output_dir / output_name
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(html_content)

        logger.info(f"Report generated: {output_path}")
        return output_path

def generate_final_report(
    results_dir: Path,
    output_file: Optional[Path] = None,
    title: str = 'Differential Expression Report',
    top_n: int = 20
) -> Path:
    """
    Render ``report.html`` for a finished run.

    Args:
        results_dir: Output directory of the run
        output_file: Report path (default: ``<results_dir>/report.html``)
        title: Report title
        top_n: Rows shown per table

    Returns:
        Path to generated report
    """
    results_dir = Path(results_dir)
    output_file = Path(output_file) if output_file is not None else results_dir / 'report.html'

    generator = ReportGenerator(output_file.parent)
    analysis_data = generator.load_analysis_data(results_dir, top_n=top_n)
    return generator.generate_report(analysis_data, output_name=output_file.name, title=title)
