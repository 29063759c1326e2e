"""Tests de la structure Cross."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import GENO_MISSING
from qtlmap.cross import Cross


def _small_geno():
    return pd.DataFrame({'m1': [1, 2, 9], 'm2': [2, 0, 1]}, index=['a', 'b', 'c'])


def _small_map():
    return {'1': pd.Series({'m1': 0.0, 'm2': 10.0})}


class TestCrossValidation:
    def test_invalid_codes_become_missing(self):
        cross = Cross({'1': _small_geno()}, _small_map(), crosstype='bc')
        assert cross.geno('1')[2, 0] == GENO_MISSING
        assert cross.n_invalid_calls == 1

    def test_geno_is_read_only(self):
        cross = Cross({'1': _small_geno()}, _small_map(), crosstype='bc')
        with pytest.raises(ValueError):
            cross.geno('1')[0, 0] = 3

    def test_markers_must_match_map(self):
        gmap = {'1': pd.Series({'m1': 0.0, 'm2': 10.0, 'm3': 20.0})}
        with pytest.raises(ValueError):
            Cross({'1': _small_geno()}, gmap, crosstype='bc')

    def test_pheno_for_unknown_individual(self):
        pheno = pd.DataFrame({'y': [1.0]}, index=['zzz'])
        with pytest.raises(ValueError):
            Cross({'1': _small_geno()}, _small_map(), pheno=pheno, crosstype='bc')

    def test_pheno_aligned_on_individuals(self):
        pheno = pd.DataFrame({'y': [3.0, 1.0]}, index=['c', 'a'])
        cross = Cross({'1': _small_geno()}, _small_map(), pheno=pheno, crosstype='bc')
        assert list(cross.pheno.index) == ['a', 'b', 'c']
        assert cross.pheno.loc['a', 'y'] == 1.0
        assert np.isnan(cross.pheno.loc['b', 'y'])

    def test_multiparent_needs_founder_geno(self):
        with pytest.raises(ValueError):
            Cross({'1': _small_geno()}, _small_map(), crosstype='riself4')

    def test_founder_geno_count(self):
        founders = pd.DataFrame({'m1': [1, 3, 1], 'm2': [3, 3, 1]})
        with pytest.raises(ValueError):
            Cross({'1': _small_geno()}, _small_map(), crosstype='riself4',
                  founder_geno={'1': founders})


class TestCrossSummary:
    def test_counts(self, two_chr_cross):
        cross = two_chr_cross
        assert cross.n_ind == 120
        assert cross.n_chr == 2
        assert cross.tot_mar == 12
        assert list(cross.n_mar) == [6, 6]
        assert cross.pheno_names == ['trait', 'null']

    def test_percent_missing(self):
        cross = Cross({'1': _small_geno()}, _small_map(), crosstype='bc')
        assert cross.percent_missing().loc['c'] == pytest.approx(50.0)
        assert cross.percent_missing().loc['a'] == pytest.approx(0.0)

    def test_summary_prints(self, bc_cross, capsys):
        bc_cross.summary()
        out = capsys.readouterr().out
        assert 'Individus: 100' in out
        assert 'Chr 1' in out

    def test_subset(self, two_chr_cross):
        sub = two_chr_cross.subset(chr='2', ind=['ind3', 'ind1'])
        assert sub.chr_names == ['2']
        assert sub.ind_ids == ['ind3', 'ind1']
        assert np.array_equal(sub.geno('2')[1], two_chr_cross.geno('2')[0])
