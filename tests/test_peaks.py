"""Tests de la détection de pics et des intervalles de support."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import ConfigurationError
from qtlmap.peaks import PEAK_COLUMNS, find_peaks, local_maxima, lod_int, max_scan1

LOD = [0, 1, 4, 2, 1, 0.5, 3.5, 1, 0, 0]


@pytest.fixture
def gmap():
    names = [f"m{j}" for j in range(10)]
    return {'1': pd.Series(np.arange(10, dtype=float), index=names),
            '2': pd.Series(np.arange(10, dtype=float) * 2, index=names)}


@pytest.fixture
def scan_out():
    names = [f"m{j}" for j in range(10)]
    index = pd.MultiIndex.from_product([['1', '2'], names], names=['chr', 'marker'])
    lod = np.array(LOD + [0.5] * 5 + [3.2] + [0.5] * 4)
    other = np.concatenate([np.zeros(10), np.linspace(0, 5, 10)])
    return pd.DataFrame({'y': lod, 'z': other}, index=index)


class TestFindPeaks:
    def test_one_peak_per_chromosome(self, scan_out, gmap):
        peaks = find_peaks(scan_out[['y']], gmap, threshold=3)
        assert list(peaks.columns) == PEAK_COLUMNS
        assert list(peaks['chr']) == ['1', '2']
        assert list(peaks['pos']) == [2.0, 10.0]
        assert list(peaks['lod']) == [4.0, 3.2]

    def test_peakdrop_keeps_both_peaks(self, scan_out, gmap):
        peaks = find_peaks(scan_out[['y']].loc[['1']], gmap, threshold=3, peakdrop=1.8)
        assert list(peaks['pos']) == [2.0, 6.0]

    def test_peakdrop_larger_than_valley_merges(self, scan_out, gmap):
        peaks = find_peaks(scan_out[['y']].loc[['1']], gmap, threshold=3, peakdrop=3.5)
        assert list(peaks['pos']) == [2.0]

    def test_min_sep(self, scan_out, gmap):
        peaks = find_peaks(scan_out[['y']].loc[['1']], gmap, threshold=3, peakdrop=1.8,
                           min_sep=5)
        assert list(peaks['pos']) == [2.0]

    def test_support_interval(self, scan_out, gmap):
        peaks = find_peaks(scan_out[['y']].loc[['1']], gmap, threshold=3, drop=1.5)
        assert peaks.loc[0, 'ci_lo'] == 2.0
        assert peaks.loc[0, 'ci_hi'] == 2.0
        wider = find_peaks(scan_out[['y']].loc[['1']], gmap, threshold=3, drop=2.0)
        assert wider.loc[0, 'ci_hi'] == 3.0

    def test_sort_modes(self, scan_out, gmap):
        by_index = find_peaks(scan_out, gmap, threshold=3)
        assert list(by_index['lodcolumn']) == ['y', 'y', 'z']
        assert list(by_index['lodindex']) == [1, 1, 2]

        by_lod = find_peaks(scan_out, gmap, threshold=3, sort_by='lod')
        assert list(by_lod['lod']) == sorted(by_lod['lod'], reverse=True)

        by_pos = find_peaks(scan_out, gmap, threshold=3, sort_by='pos')
        assert list(by_pos['chr']) == ['1', '2', '2']

    def test_no_peak(self, scan_out, gmap):
        peaks = find_peaks(scan_out, gmap, threshold=10)
        assert peaks.empty
        assert list(peaks.columns) == PEAK_COLUMNS

    def test_threshold_per_phenotype(self, scan_out, gmap):
        thr = pd.DataFrame({'y': [3.8], 'z': [6.0]}, index=pd.Index([0.05], name='alpha'))
        peaks = find_peaks(scan_out, gmap, threshold=thr)
        assert list(peaks['pos']) == [2.0]

    def test_invalid_arguments(self, scan_out, gmap):
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=3, peakdrop=1.0, drop=2.0)
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=3, sort_by='chr')
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=[1, 2, 3])

    def test_x_chromosome_support_interval(self, scan_out, gmap):
        out = scan_out[['y']].rename(index={'2': 'X'}, level='chr')
        xmap = {'1': gmap['1'], 'X': gmap['2']}
        peaks = find_peaks(out, xmap, threshold=3, dropX=1.5)
        assert list(peaks.columns) == PEAK_COLUMNS + ['ci_lo', 'ci_hi']
        assert list(peaks['chr']) == ['1', 'X']
        assert np.isnan(peaks.loc[0, 'ci_lo'])
        assert peaks.loc[1, 'ci_lo'] == 10.0
        assert peaks.loc[1, 'ci_hi'] == 10.0

    def test_x_chromosome_drop_checked_against_peakdrop(self, scan_out, gmap):
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=3, peakdropX=1.0, dropX=2.0)
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=3, peakdrop=3.0, drop=2.0, peakdropX=1.0)
        with pytest.raises(ConfigurationError):
            find_peaks(scan_out, gmap, threshold=3, peakdropX=0)


class TestMaxScan1:
    def test_genome_wide(self, scan_out, gmap):
        top = max_scan1(scan_out, gmap)
        assert top.index[0] == 'm2'
        assert top.loc['m2', 'chr'] == '1'
        assert top.loc['m2', 'y'] == 4.0

    def test_restricted_to_chromosome(self, scan_out, gmap):
        top = max_scan1(scan_out, gmap, lodcolumn='y', chr=2)
        assert top.index[0] == 'm5'
        assert top.loc['m5', 'pos'] == 10.0


def test_lod_int(scan_out, gmap):
    ci = lod_int(scan_out, gmap, chr='1', drop=2.0)
    assert list(ci.columns) == ['ci_lo', 'pos', 'ci_hi']
    assert ci.iloc[0].tolist() == [2.0, 2.0, 3.0]


@pytest.mark.parametrize('lod, expected', [
    ([1, 3, 3, 1], [1]),
    ([5, 1, 2], [0, 2]),
    ([0, 0, 0], []),
])
def test_local_maxima(lod, expected):
    assert local_maxima(np.array(lod, dtype=float), threshold=0.5) == expected
