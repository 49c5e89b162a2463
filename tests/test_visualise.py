import pytest
from pathlib import Path
import polars as pl

from rankpath.data import Term, read_gmt
from rankpath.visualise import (
    build_subgroups,
    evidence_colours,
    evidence_columns,
    plot_legend,
    prepare_cytoscape,
)


@pytest.fixture
def evidence():
    """Evidence table for three terms and two tests."""
    return pl.DataFrame({
        'term_id': ['T1', 'T2', 'T3'],
        'evidence': pl.Series([['A'], ['A', 'B'], ['combined']], dtype=pl.List(pl.Utf8)),
        'Genes_A': pl.Series([['g1'], ['g2', 'g3'], None], dtype=pl.List(pl.Utf8)),
        'Genes_B': pl.Series([None, ['g3'], None], dtype=pl.List(pl.Utf8)),
    })


@pytest.fixture
def terms():
    return pl.DataFrame({
        'term_id': ['T1', 'T2', 'T3'],
        'term_name': ['one', 'two', 'three'],
        'adjusted_p_val': [0.001, 0.01, 0.03],
    })


@pytest.fixture
def library():
    return {
        'T1': Term('T1', 'one', ('g1', 'g5')),
        'T2': Term('T2', 'two', ('g2', 'g3')),
        'T3': Term('T3', 'three', ('g4', 'g6', 'g7')),
    }


def test_evidence_columns(evidence):
    """Test names are read from the Genes_ columns."""
    assert evidence_columns(evidence) == ['A', 'B']


def test_evidence_colours():
    """Every test gets a distinct colour and combined a fixed one."""
    colours = evidence_colours(['A', 'B', 'C'])

    assert set(colours) == {'A', 'B', 'C', 'combined'}
    assert len({colours['A'], colours['B'], colours['C']}) == 3
    assert all(colour.startswith('#') for colour in colours.values())


def test_build_subgroups(evidence):
    """Indicator columns mark the tests supporting each term."""
    subgroups = build_subgroups(evidence)

    assert subgroups.columns == ['term_id', 'A', 'B', 'combined', 'instruct']
    assert subgroups['A'].to_list() == [1, 1, 0]
    assert subgroups['B'].to_list() == [0, 1, 0]
    assert subgroups['combined'].to_list() == [0, 0, 1]
    assert subgroups['instruct'][0].startswith('piechart: attributelist="A,B,combined"')


def test_plot_legend(tmp_path):
    """The legend is saved to the requested file."""
    path = plot_legend(['A', 'B'], tmp_path / 'legend.pdf')
    assert path.exists()
    assert path.stat().st_size > 0


def test_prepare_cytoscape(tmp_path, terms, library, evidence):
    """All four files are written with the tag as prefix."""
    tag = tmp_path / 'maps' / 'run1_'

    written = prepare_cytoscape(terms, library, str(tag), evidence)

    assert [path.name for path in written] == [
        'run1_pathways.txt', 'run1_pathways.gmt', 'run1_subgroups.txt', 'run1_legend.pdf'
    ]
    pathways = pl.read_csv(written[0], separator='\t')
    assert pathways.columns == ['term_id', 'term_name', 'adjusted_p_val']
    assert read_gmt(written[1]) == library


def test_prepare_cytoscape_without_evidence(tmp_path, terms, library):
    """Only the term table and GMT file are written for a single test."""
    written = prepare_cytoscape(terms, library, str(tmp_path) + '/')

    assert [Path(path).name for path in written] == ['pathways.txt', 'pathways.gmt']
