"""Tests du calcul des probabilités de génotype (forward-backward)."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import ConfigurationError, CrossType
from qtlmap.cross import Cross
from qtlmap.genoprob import (
    GenoProb, calc_genoprob, call_genotypes, genoprob_to_alleleprob, maxmarg,
    pull_genoprobpos,
)
from qtlmap.maps import GeneticMap, insert_pseudomarkers

from conftest import make_cross


class TestCalcGenoprob:
    @pytest.mark.parametrize('crosstype', ['bc', 'f2', 'riself'])
    def test_probabilities_sum_to_one(self, crosstype):
        cross = make_cross(n_ind=30, crosstype=crosstype, missing_rate=0.2, seed=11)
        gmap = insert_pseudomarkers(cross.gmap, step=2.0)
        pr = calc_genoprob(cross, gmap)
        arr = pr['1']
        assert arr.shape == (30, cross.crosstype.n_gen, gmap.n_pos('1'))
        assert np.allclose(arr.sum(axis=1), 1.0)
        assert np.all(arr >= 0)

    def test_observed_marker_dominates(self, bc_cross):
        pr = calc_genoprob(bc_cross, error_prob=1e-4)
        obs = bc_cross.geno('1')
        arr = pr['1']
        for j in range(obs.shape[1]):
            called = arr[np.arange(bc_cross.n_ind), obs[:, j] - 1, j]
            assert np.all(called > 0.99)

    def test_missing_individual_gets_prior(self):
        geno = pd.DataFrame({'m1': [1, 0], 'm2': [2, 0], 'm3': [1, 0]}, index=['a', 'b'])
        gmap = {'1': pd.Series({'m1': 0.0, 'm2': 10.0, 'm3': 20.0})}
        pr = calc_genoprob(Cross({'1': geno}, gmap, crosstype='bc'))
        assert np.allclose(pr['1'][1], 0.5)

    def test_f2_missing_individual_gets_prior(self):
        geno = pd.DataFrame({'m1': [1, 0], 'm2': [3, 0]}, index=['a', 'b'])
        gmap = {'1': pd.Series({'m1': 0.0, 'm2': 30.0})}
        pr = calc_genoprob(Cross({'1': geno}, gmap, crosstype='f2'))
        assert np.allclose(pr['1'][1, :, 0], [0.25, 0.5, 0.25])

    def test_single_marker_chromosome_uses_prior(self):
        """Moins de 2 marqueurs : probabilités a priori à toutes les positions."""
        geno = pd.DataFrame({'m1': [1, 3, 2]}, index=['a', 'b', 'c'])
        cross = Cross({'1': geno}, {'1': pd.Series({'m1': 5.0})}, crosstype='f2')
        pr = calc_genoprob(cross, insert_pseudomarkers(cross.gmap, step=1.0, off_end=2.0))
        assert np.allclose(pr['1'], np.array([0.25, 0.5, 0.25])[None, :, None])

    def test_pseudomarker_between_informative_markers(self):
        """Entre deux marqueurs identiques, le génotype reste très probable."""
        geno = pd.DataFrame({'m1': [1], 'm2': [1]}, index=['a'])
        cross = Cross({'1': geno}, {'1': pd.Series({'m1': 0.0, 'm2': 2.0})}, crosstype='bc')
        pr = calc_genoprob(cross, insert_pseudomarkers(cross.gmap, step=1.0))
        assert pr['1'][0, 0, 1] > 0.99

    def test_threads_give_same_result(self, two_chr_cross):
        gmap = insert_pseudomarkers(two_chr_cross.gmap, step=5.0)
        a = calc_genoprob(two_chr_cross, gmap, cores=1)
        b = calc_genoprob(two_chr_cross, gmap, cores=2)
        for chrom in a.chromosomes:
            assert np.allclose(a[chrom], b[chrom])

    def test_invalid_error_prob(self, bc_cross):
        with pytest.raises(ConfigurationError):
            calc_genoprob(bc_cross, error_prob=1.0)

    def test_multiparent(self, magic_cross):
        pr = calc_genoprob(magic_cross)
        assert pr.genotypes('1') == ('AA', 'BB', 'CC', 'DD')
        assert np.allclose(pr['1'].sum(axis=1), 1.0)

    def test_result_is_read_only(self, bc_cross):
        pr = calc_genoprob(bc_cross)
        with pytest.raises(ValueError):
            pr['1'][0, 0, 0] = 0.5


class TestGenoProbAccess:
    def test_subset_and_pull(self, two_chr_cross):
        pr = calc_genoprob(two_chr_cross)
        sub = pr.subset(chr='2', ind=['ind2', 'ind5'])
        assert sub.chromosomes == ['2']
        assert sub.ind_ids == ['ind2', 'ind5']
        assert np.allclose(sub['2'][0], pr['2'][1])

        df = pull_genoprobpos(pr, two_chr_cross.gmap, chr='1', pos=21.0)
        assert list(df.columns) == ['AA', 'AB']
        assert np.allclose(df.values, pr['1'][:, :, 2])

    def test_alleleprob(self):
        pr = GenoProb({'1': np.array([[[0.2], [0.5], [0.3]]])}, ['a'], ('AA', 'AB', 'BB'),
                      {'1': ['m1']}, CrossType('f2'))
        ap = genoprob_to_alleleprob(pr)
        assert ap.alleleprob
        assert ap.genotypes('1') == ('A', 'B')
        assert np.allclose(ap['1'][0, :, 0], [0.45, 0.55])


def _one_position(probs):
    arr = np.asarray(probs, dtype=float)[None, :, None]
    return GenoProb({'1': arr}, ['a'], ('AA', 'AB', 'BB'), {'1': ['m1']}, CrossType('f2'))


class TestMaxmarg:
    def test_confidence_floor(self):
        pr = _one_position([0.9, 0.05, 0.05])
        assert maxmarg(pr, minprob=0.75)['1'].loc['a', 'm1'] == 1
        assert pd.isna(maxmarg(pr, minprob=0.95)['1'].loc['a', 'm1'])

    def test_return_char(self):
        pr = _one_position([0.05, 0.05, 0.9])
        assert maxmarg(pr, minprob=0.5, return_char=True)['1'].loc['a', 'm1'] == 'BB'

    def test_single_position(self, bc_cross):
        pr = calc_genoprob(bc_cross)
        calls = maxmarg(pr, bc_cross.gmap, chr='1', pos=19.0)
        assert calls.name == 'c1m3'
        assert np.array_equal(calls.astype(int).values, bc_cross.geno('1')[:, 2])

    def test_pos_requires_chr(self, bc_cross):
        pr = calc_genoprob(bc_cross)
        with pytest.raises(ConfigurationError):
            maxmarg(pr, bc_cross.gmap, pos=10.0)

    def test_invalid_minprob(self):
        with pytest.raises(ConfigurationError):
            maxmarg(_one_position([1, 0, 0]), minprob=0)

    def test_call_genotypes(self):
        p = np.array([[0.5, 0.5], [0.2, 0.8]])
        assert list(call_genotypes(p, 0.5)) == [0, 1]
        assert list(call_genotypes(p, 0.9)) == [-1, -1]
