"""Tests des cartes et de l'insertion de pseudo-marqueurs."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import ConfigurationError
from qtlmap.maps import (
    GeneticMap, find_marker, imf_haldane, insert_pseudomarkers, interp_map,
    jitter_map, map_list_to_df, mf_haldane,
)


def _map(**chroms):
    return GeneticMap({c.lstrip('c'): pd.Series(v) for c, v in chroms.items()})


class TestGeneticMap:
    def test_strictly_increasing(self):
        with pytest.raises(ValueError):
            GeneticMap({'1': pd.Series({'m1': 0.0, 'm2': 0.0})})
        with pytest.raises(ValueError):
            GeneticMap({'1': pd.Series({'m1': 5.0, 'm2': 1.0})})

    def test_duplicate_names(self):
        with pytest.raises(ValueError):
            GeneticMap({'1': pd.Series([0.0, 1.0], index=['m1', 'm1'])})

    def test_accessors(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 12.5}, c2={'m3': 3.0})
        assert gmap.chromosomes == ['1', '2']
        assert gmap.tot_pos == 3
        assert gmap.span('1') == pytest.approx(12.5)
        assert gmap.names('1') == ['m1', 'm2']
        assert find_marker(gmap, '1', 10.0) == 'm2'

    def test_map_list_to_df(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 12.5}, c2={'m3': 3.0})
        df = map_list_to_df(gmap)
        assert list(df.columns) == ['chr', 'pos', 'marker']
        assert df.loc['m3', 'chr'] == '2'


class TestInsertPseudomarkers:
    def test_fixed_grid(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0})
        out = insert_pseudomarkers(gmap, step=2.5)
        assert out.names('1') == ['m1', 'c1.loc1', 'c1.loc2', 'c1.loc3', 'm2']
        assert np.allclose(out.values('1'), [0, 2.5, 5, 7.5, 10])
        assert list(out.is_pseudo('1')) == [False, True, True, True, False]
        assert out.n_pseudo == 3

    def test_round_trip_when_step_exceeds_span(self):
        """Un pas >= longueur du chromosome n'ajoute aucun pseudo-marqueur."""
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0}, c2={'m3': 0.0, 'm4': 4.0})
        assert insert_pseudomarkers(gmap, step=10.0) == gmap
        assert insert_pseudomarkers(gmap, step=50.0) == gmap

    def test_grid_points_near_markers_dropped(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.005})
        out = insert_pseudomarkers(gmap, step=5.0, tol=0.01)
        assert np.allclose(out.values('1'), [0, 5, 10.005])

    def test_off_end(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0})
        out = insert_pseudomarkers(gmap, step=5.0, off_end=5.0)
        assert np.allclose(out.values('1'), [-5, 0, 5, 10, 15])

    def test_max_stepwidth(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0, 'm3': 13.0})
        out = insert_pseudomarkers(gmap, step=4.0, stepwidth='max')
        assert np.allclose(out.values('1'), [0, 10 / 3, 20 / 3, 10, 13])
        assert np.max(np.diff(out.values('1'))) <= 4.0

    @pytest.mark.parametrize('step', [0, -1.0, None])
    def test_invalid_step(self, step):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0})
        with pytest.raises(ConfigurationError):
            insert_pseudomarkers(gmap, step=step)

    def test_pseudomarker_map(self):
        gmap = _map(c1={'m1': 0.0, 'm2': 10.0})
        out = insert_pseudomarkers(gmap, pseudomarker_map={'1': [3.0]})
        assert np.allclose(out.values('1'), [0, 3, 10])


class TestInterpMap:
    def test_interpolation_and_extrapolation(self):
        old = _map(c1={'m1': 0.0, 'm2': 10.0, 'm3': 20.0})
        new = _map(c1={'m1': 1.0, 'm2': 2.0, 'm3': 4.0})
        dense = insert_pseudomarkers(old, step=5.0, off_end=5.0)
        out = interp_map(dense, old, new)
        assert out.names('1') == dense.names('1')
        assert np.allclose(out.values('1'), [0.5, 1.0, 1.5, 2.0, 3.0, 4.0, 5.0])
        assert list(out.is_pseudo('1')) == list(dense.is_pseudo('1'))


class TestJitter:
    def test_ties_are_spread(self):
        positions = {'1': pd.Series([0.0, 0.0, 0.0, 5.0], index=['a', 'b', 'c', 'd'])}
        out, n_moved = jitter_map(positions)
        assert n_moved == 2
        assert np.all(np.diff(out['1'].values) > 0)
        GeneticMap(out)


class TestHaldane:
    def test_round_trip(self):
        d = np.array([0.0, 1.0, 10.0, 50.0])
        assert np.allclose(imf_haldane(mf_haldane(d)), d)
        assert mf_haldane(1e6) == pytest.approx(0.5)
