"""Tests de fumée des graphiques (backend Agg)."""

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from qtlmap.genoprob import calc_genoprob, maxmarg
from qtlmap.lod_engine import scan1, scan1coef
from qtlmap.peaks import find_peaks
from qtlmap.snp_scan import scan1snps, snpinfo_from_cross
from qtlmap.visualizations import (
    plot_coef, plot_genoprob, plot_onegeno, plot_peaks, plot_pxg, plot_scan1, plot_snpasso,
    pxg_summary, save_figure,
)


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


@pytest.fixture
def scanned(two_chr_cross):
    pr = calc_genoprob(two_chr_cross)
    return pr, scan1(pr, two_chr_cross.pheno)


def test_plot_scan1(two_chr_cross, scanned):
    _, out = scanned
    ax = plot_scan1(out, two_chr_cross.gmap, lodcolumn='trait', threshold=3.0)
    assert isinstance(ax, plt.Axes)
    assert len(ax.get_lines()) == 3
    one = plot_scan1(out, two_chr_cross.gmap, chr='2')
    assert one.get_xlabel() == 'Chr 2 position'


def test_plot_scan1_unknown_chromosome(two_chr_cross, scanned):
    _, out = scanned
    with pytest.raises(ValueError):
        plot_scan1(out, two_chr_cross.gmap, chr='9')


def test_plot_coef(two_chr_cross, scanned):
    pr, _ = scanned
    coef = scan1coef(pr.subset(chr='1'), two_chr_cross.pheno['trait'], se=True)
    ax = plot_coef(coef, two_chr_cross.gmap)
    assert [t.get_text() for t in ax.get_legend().get_texts()] == ['AA', 'AB']


def test_plot_genoprob_and_onegeno(two_chr_cross, scanned):
    pr, _ = scanned
    ax = plot_genoprob(pr, two_chr_cross.gmap, ind='ind3', chr='2')
    assert ax.get_title() == 'Individu ind3'
    calls = maxmarg(pr, minprob=0.5)
    ax = plot_onegeno(calls, two_chr_cross.gmap, ind=0, labels=['AA', 'AB'])
    assert [t.get_text() for t in ax.get_xticklabels()] == ['1', '2']


def test_plot_peaks(two_chr_cross, scanned):
    _, out = scanned
    peaks = find_peaks(out, two_chr_cross.gmap, threshold=3, drop=1.5)
    ax = plot_peaks(peaks, two_chr_cross.gmap)
    assert [t.get_text() for t in ax.get_yticklabels()] == list(pd.unique(peaks['lodcolumn']))


def test_plot_peaks_empty(two_chr_cross, scanned):
    _, out = scanned
    peaks = find_peaks(out, two_chr_cross.gmap, threshold=100)
    assert isinstance(plot_peaks(peaks, two_chr_cross.gmap), plt.Axes)


def test_pxg():
    geno = pd.Series([1, 1, 2, 2, pd.NA], index=list('abcde'), dtype='Int64')
    pheno = pd.Series([1.0, 3.0, 10.0, 12.0, 50.0], index=list('abcde'), name='y')
    stats = pxg_summary(geno, pheno)
    assert stats.loc[2, 'mean'] == 11.0
    assert stats.loc[1, 'n'] == 2
    assert stats.loc[1, 'se'] == pytest.approx(1.0)

    ax = plot_pxg(geno, pheno, SEmult=2)
    assert [t.get_text() for t in ax.get_yticklabels()] == ['2', '1']
    assert ax.get_xlabel() == 'y'


def test_plot_snpasso_and_save(magic_cross, tmp_path):
    pr = calc_genoprob(magic_cross)
    res = scan1snps(pr, magic_cross.gmap, magic_cross.pheno, snpinfo_from_cross(magic_cross))
    ax = plot_snpasso(res['lod'], res['snpinfo'], threshold=3)
    path = save_figure(ax, str(tmp_path / 'figs' / 'snpasso.png'))
    assert (tmp_path / 'figs' / 'snpasso.png').exists()
    assert path.endswith('snpasso.png')


def test_save_figure_accepts_figure(tmp_path):
    fig, ax = plt.subplots()
    ax.plot(np.arange(3))
    save_figure(fig, str(tmp_path / 'fig.png'))
    assert (tmp_path / 'fig.png').exists()
