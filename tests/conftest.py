"""Croisements simulés partagés par les tests."""

import numpy as np
import pandas as pd
import pytest

from qtlmap.config import GENO_MISSING
from qtlmap.cross import Cross
from qtlmap.maps import mf_haldane


def simulate_states(rng, n_ind, positions, n_states=2, mating=None):
    """
    Chaîne de Markov des états fondateurs le long d'un chromosome.
    mating='self' : lignées recombinantes par autofécondation, 2 fondateurs
    (changement 2r/(1+2r)) ou 4 fondateurs (r/(1+2r) vers chacun des autres).
    """
    r = mf_haldane(np.diff(positions))
    if mating == 'self':
        r = (2 if n_states == 2 else n_states - 1) * r / (1 + 2 * r)
    state = rng.integers(0, n_states, n_ind)
    cols = [state]
    for rr in r:
        switch = rng.random(n_ind) < rr
        other = (state + rng.integers(1, n_states, n_ind)) % n_states
        state = np.where(switch, other, state)
        cols.append(state)
    return np.column_stack(cols)


def make_cross(n_ind=100, n_chr=1, n_mar=5, spacing=10.0, crosstype='bc', seed=1,
               qtl=(0, 2), effect=2.0, noise=0.5, missing_rate=0.0):
    """
    Croisement biparental simulé avec un QTL au marqueur qtl=(chr, index).

    Phénotype 'trait' = effect × (nombre d'allèles B au QTL) + bruit.
    """
    rng = np.random.default_rng(seed)
    ids = [f"ind{i + 1}" for i in range(n_ind)]
    positions = np.arange(n_mar) * spacing
    gmap, geno = {}, {}
    dosage_at_qtl = None
    for c in range(n_chr):
        chrom = str(c + 1)
        names = [f"c{chrom}m{j + 1}" for j in range(n_mar)]
        gmap[chrom] = pd.Series(positions, index=names)
        if crosstype == 'f2':
            a = simulate_states(rng, n_ind, positions)
            b = simulate_states(rng, n_ind, positions)
            dosage = a + b
            codes = 1 + dosage
        elif crosstype == 'riself':
            dosage = 2 * simulate_states(rng, n_ind, positions, mating='self')
            codes = 1 + dosage
        else:
            dosage = simulate_states(rng, n_ind, positions)
            codes = 1 + dosage
        if missing_rate > 0:
            codes = np.where(rng.random(codes.shape) < missing_rate, GENO_MISSING, codes)
        geno[chrom] = pd.DataFrame(codes, index=ids, columns=names)
        if qtl is not None and c == qtl[0]:
            dosage_at_qtl = dosage[:, qtl[1]]

    if dosage_at_qtl is None:
        dosage_at_qtl = np.zeros(n_ind)
    trait = effect * dosage_at_qtl + rng.normal(0.0, noise, n_ind)
    pheno = pd.DataFrame({'trait': trait, 'null': rng.normal(0.0, 1.0, n_ind)}, index=ids)
    return Cross(geno, gmap, pheno=pheno, crosstype=crosstype)


# Génotypes fondateurs (4 fondateurs × 8 marqueurs), tous informatifs ;
# le marqueur m4 sépare {A, B} de {C, D} (sdp = 12)
FOUNDER_GENO = np.array([
    [1, 3, 1, 1, 3, 1, 3, 3],
    [3, 1, 1, 1, 1, 3, 3, 1],
    [1, 1, 3, 3, 1, 1, 3, 1],
    [1, 3, 1, 3, 1, 3, 1, 1],
])


def make_magic_cross(n_ind=200, seed=3, effect=3.0, noise=0.5, qtl_marker=3):
    """Lignées recombinantes à 4 fondateurs ; QTL : fondateurs A/B contre C/D."""
    rng = np.random.default_rng(seed)
    n_mar = FOUNDER_GENO.shape[1]
    positions = np.arange(n_mar) * 5.0
    names = [f"m{j + 1}" for j in range(n_mar)]
    ids = [f"ril{i + 1}" for i in range(n_ind)]
    states = simulate_states(rng, n_ind, positions, n_states=4, mating='self')
    codes = FOUNDER_GENO[states, np.arange(n_mar)[None, :]]
    trait = effect * (states[:, qtl_marker] < 2) + rng.normal(0.0, noise, n_ind)
    return Cross(
        {'1': pd.DataFrame(codes, index=ids, columns=names)},
        {'1': pd.Series(positions, index=names)},
        pheno=pd.DataFrame({'bolting': trait}, index=ids),
        crosstype='riself4',
        founder_geno={'1': pd.DataFrame(FOUNDER_GENO, columns=names)},
    )


def write_rqtl_csv(cross, filepath):
    """Écrit un croisement biparental au format csv R/qtl (symboles AA/AB/BB)."""
    symbols = {0: '-', 1: 'AA', 2: 'AB', 3: 'BB'}
    header = ['id'] + cross.pheno_names
    chr_row = [''] * len(header)
    pos_row = [''] * len(header)
    body = [[i] + [f"{v:.4f}" for v in cross.pheno.loc[i].values] for i in cross.ind_ids]
    for chrom in cross.chr_names:
        for m, p in cross.gmap[chrom].items():
            header.append(m)
            chr_row.append(chrom)
            pos_row.append(f"{p:g}")
        g = cross.geno(chrom)
        for k in range(cross.n_ind):
            body[k].extend(symbols[int(x)] for x in g[k])
    with open(filepath, 'w') as f:
        for row in [header, chr_row, pos_row] + body:
            f.write(','.join(row) + '\n')
    return filepath


@pytest.fixture
def bc_cross():
    return make_cross()


@pytest.fixture
def two_chr_cross():
    return make_cross(n_ind=120, n_chr=2, n_mar=6, seed=7)


@pytest.fixture
def magic_cross():
    return make_magic_cross()
