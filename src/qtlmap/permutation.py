"""
Tests de permutation : distribution nulle du LOD maximal genome-wide et
seuils de significativité empiriques.
"""

import numpy as np
import pandas as pd

from .config import ConfigurationError, validate_alpha
from .lod_engine import _as_covar_frame, as_pheno_frame, common_ids, scan1
from .parallel import parallel_map


def _strata_groups(perm_strata, ids):
    if perm_strata is None:
        return [np.arange(len(ids))]
    strata = pd.Series(perm_strata).copy()
    strata.index = strata.index.astype(str)
    missing = [i for i in ids if i not in strata.index]
    if missing:
        raise ConfigurationError(f"perm_strata sans valeur pour {missing[:5]}")
    codes = strata.loc[ids].values
    return [np.flatnonzero(codes == s) for s in pd.unique(codes)]


def _permuted_order(rng, observed, groups):
    """
    Permutation des lignes observées, à l'intérieur de chaque strate.
    Les lignes manquantes restent en place.
    """
    order = np.arange(len(observed))
    for g in groups:
        rows = g[observed[g]]
        order[rows] = rows[rng.permutation(len(rows))]
    return order


def scan1perm(pr, pheno, kinship=None, addcovar=None, n_perm=1000, perm_strata=None,
              cores=1, seed=None, reml=True, quiet=True):
    """
    Permutations des phénotypes et LOD maximal genome-wide pour chacune.

    Les génotypes restent fixes ; les phénotypes (avec leurs covariables)
    sont réattribués aléatoirement aux individus, séparément pour chaque
    phénotype et uniquement parmi les individus observés.

    Parameters
    ----------
    pr : GenoProb
    pheno : DataFrame, Series ou array
    kinship, addcovar : voir scan1
    n_perm : int
        Nombre de permutations (>= 1)
    perm_strata : Series, optional
        Strates par individu ; permutations à l'intérieur des strates
    cores : int
        Permutations réparties sur cores threads (0 = tous les CPU)
    seed : int, optional
        Graine : même graine → mêmes permutations, quel que soit cores

    Returns
    -------
    DataFrame (n_perm × phénotypes) des LOD maximaux
    """
    if n_perm is None or int(n_perm) < 1:
        raise ConfigurationError(f"n_perm doit être >= 1, reçu: {n_perm}")
    n_perm = int(n_perm)

    pheno = as_pheno_frame(pheno, pr.ind_ids)
    addcovar = _as_covar_frame(addcovar)
    ids = common_ids(pr, pheno, kinship, addcovar)
    ph = pheno.loc[ids]
    cov = addcovar.loc[ids] if addcovar is not None else None
    groups = _strata_groups(perm_strata, ids)
    observed = ph.notna().values

    if not quiet:
        print(f"  Permutations: {n_perm} × {ph.shape[1]} phénotypes, seed={seed}")

    seeds = np.random.SeedSequence(seed).spawn(n_perm)

    def one_perm(k):
        rng = np.random.default_rng(seeds[k])
        if cov is None:
            permuted = ph.copy()
            for j, col in enumerate(ph.columns):
                order = _permuted_order(rng, observed[:, j], groups)
                permuted[col] = ph[col].values[order]
            out = scan1(pr, permuted, kinship=kinship, reml=reml)
            return out.max(axis=0).values

        maxima = np.empty(ph.shape[1])
        for j, col in enumerate(ph.columns):
            order = _permuted_order(rng, observed[:, j], groups)
            y = pd.DataFrame({col: ph[col].values[order]}, index=ids)
            c = pd.DataFrame(cov.values[order], index=ids, columns=cov.columns)
            out = scan1(pr, y, kinship=kinship, addcovar=c, reml=reml)
            maxima[j] = out[col].max()
        return maxima

    maxima = parallel_map(one_perm, range(n_perm), cores=cores,
                          desc="Permutations", quiet=quiet)
    result = pd.DataFrame(np.vstack(maxima), columns=ph.columns)
    result.index = pd.RangeIndex(1, n_perm + 1, name='perm')
    return result


def summary_scan1perm(operm, alpha=0.05):
    """
    Seuils de significativité : quantile (1 - alpha) des LOD maximaux.

    Returns
    -------
    DataFrame (alpha × phénotypes)
    """
    alphas = validate_alpha(alpha)
    operm = pd.DataFrame(operm)
    thr = {col: np.nanquantile(operm[col].values, 1.0 - alphas) for col in operm.columns}
    out = pd.DataFrame(thr, index=pd.Index(alphas, name='alpha'))
    out.attrs['n_perm'] = operm.notna().sum().to_dict()
    return out
