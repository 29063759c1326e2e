"""
Moteur de calcul des LOD scores (scan génomique).

- Régression de Haley-Knott : à chaque position, régression du phénotype
  sur les probabilités de génotype ; LOD = n/2 · log10(RSS0 / RSS1)
- Modèle linéaire mixte : héritabilité estimée sous H0 (REML) avec la
  matrice d'apparentement, puis moindres carrés pondérés après rotation
  par les vecteurs propres du kinship
- LOCO : un kinship par chromosome
- Effets QTL (scan1coef) : coefficients par classe de génotype
"""

import numpy as np
import pandas as pd
from scipy.optimize import minimize_scalar

from .config import ConfigurationError
from .parallel import parallel_map

_HSQ_UPPER = 1.0 - 1e-4
_RSS_FLOOR = np.finfo(float).tiny


# ============================================================
# Préparation des données
# ============================================================

def as_pheno_frame(pheno, ind_ids):
    """Phénotypes (DataFrame, Series ou array) → DataFrame indexé par individu."""
    if isinstance(pheno, pd.Series):
        pheno = pheno.to_frame(name=pheno.name if pheno.name is not None else 'pheno')
    elif not isinstance(pheno, pd.DataFrame):
        arr = np.asarray(pheno, dtype=float)
        if arr.ndim == 1:
            arr = arr[:, None]
        if arr.shape[0] != len(ind_ids):
            raise ValueError(
                f"{arr.shape[0]} lignes de phénotype pour {len(ind_ids)} individus"
            )
        pheno = pd.DataFrame(arr, index=ind_ids,
                             columns=[f"pheno{i + 1}" for i in range(arr.shape[1])])
    pheno = pheno.copy()
    pheno.index = pheno.index.astype(str)
    pheno.columns = [str(c) for c in pheno.columns]
    if pheno.shape[1] == 0:
        raise ConfigurationError("Aucun phénotype à analyser")
    return pheno.apply(pd.to_numeric, errors='coerce').astype(float)


def common_ids(pr, pheno, kinship=None, addcovar=None):
    """Individus présents partout, dans l'ordre de pr ; covariables complètes."""
    keep = set(pheno.index)
    if kinship is not None:
        k = next(iter(kinship.values())) if isinstance(kinship, dict) else kinship
        keep &= set(map(str, k.index))
    if addcovar is not None:
        complete = addcovar.dropna()
        keep &= set(complete.index)
    ids = [i for i in pr.ind_ids if i in keep]
    if not ids:
        raise ValueError("Aucun individu commun entre probabilités, phénotypes et covariables")
    return ids


def covar_matrix(addcovar, ids):
    if addcovar is None:
        return np.empty((len(ids), 0)), []
    cov = pd.DataFrame(addcovar).copy()
    cov.index = cov.index.astype(str)
    cov = cov.loc[ids]
    cov = pd.get_dummies(cov, drop_first=True, dtype=float)
    return cov.values.astype(float), [str(c) for c in cov.columns]


def independent_covariates(cov):
    """
    Indices des colonnes de covariables à conserver pour un lot d'individus.

    Une colonne est écartée si elle est constante ou combinaison linéaire
    de l'intercept et des colonnes déjà retenues (ex. indicatrice de sexe
    lorsque le phénotype n'est observé que chez les femelles).
    """
    keep = []
    base = np.ones((cov.shape[0], 1))
    for j in range(cov.shape[1]):
        cand = np.column_stack([base, cov[:, j]])
        if np.linalg.matrix_rank(cand) == cand.shape[1]:
            base = cand
            keep.append(j)
    return keep


def _as_covar_frame(addcovar):
    if addcovar is None:
        return None
    if isinstance(addcovar, pd.Series):
        addcovar = addcovar.to_frame()
    cov = pd.DataFrame(addcovar).copy()
    cov.index = cov.index.astype(str)
    return cov


def missing_batches(pheno):
    """
    Regroupe les colonnes de phénotype par motif de valeurs manquantes.

    Returns
    -------
    list de (masque bool sur les lignes, liste d'indices de colonnes)
    """
    groups = {}
    observed = pheno.notna().values
    for j in range(observed.shape[1]):
        key = observed[:, j].tobytes()
        groups.setdefault(key, (observed[:, j], []))[1].append(j)
    return list(groups.values())


def _kinship_matrix(kinship, ids):
    k = kinship.copy()
    k.index = k.index.astype(str)
    k.columns = k.columns.astype(str)
    return k.loc[ids, ids].values


# ============================================================
# Algèbre
# ============================================================

def _rss(X, Y):
    """Somme des carrés résiduels par colonne de Y."""
    if X.shape[1] == 0:
        return np.sum(Y ** 2, axis=0)
    beta, _, _, _ = np.linalg.lstsq(X, Y, rcond=None)
    resid = Y - X @ beta
    return np.sum(resid ** 2, axis=0)


def _lod(n, rss0, rss1):
    rss1 = np.maximum(rss1, _RSS_FLOOR)
    with np.errstate(divide='ignore', invalid='ignore'):
        lod = n / 2.0 * (np.log10(rss0) - np.log10(rss1))
    lod = np.where(rss0 > 0, lod, 0.0)
    return np.maximum(lod, 0.0)


def _eigen(K):
    d, U = np.linalg.eigh(K)
    return np.clip(d, 0.0, None), U


def _neg_loglik(hsq, d, y, X, reml):
    v = hsq * d + (1.0 - hsq)
    sw = 1.0 / np.sqrt(v)
    yw = y * sw
    Xw = X * sw[:, None]
    rss = float(_rss(Xw, yw[:, None])[0])
    n, p = X.shape
    if reml:
        df = n - p
        _, logdet = np.linalg.slogdet(Xw.T @ Xw)
        ll = -0.5 * (df * np.log(rss / df) + np.sum(np.log(v)) + logdet + df)
    else:
        ll = -0.5 * (n * np.log(rss / n) + np.sum(np.log(v)) + n)
    return -ll


def _fit_hsq(d, y, X, reml=True):
    """Héritabilité maximisant la (RE)ML sous H0, y et X déjà tournés."""
    if len(y) <= X.shape[1] + 1:
        return 0.0
    res = minimize_scalar(_neg_loglik, bounds=(0.0, _HSQ_UPPER), method='bounded',
                          args=(d, y, X, reml), options={'xatol': 1e-6})
    best_h, best_val = float(res.x), float(res.fun)
    for h in (0.0, _HSQ_UPPER):
        val = _neg_loglik(h, d, y, X, reml)
        if val < best_val:
            best_h, best_val = h, val
    return best_h


def estimate_herit(kinship, pheno, addcovar=None, reml=True):
    """
    Estime l'héritabilité (part de variance due au kinship) sous H0.

    Returns
    -------
    Series {phénotype: hsq}
    """
    ids = [str(i) for i in kinship.index]
    pheno = as_pheno_frame(pheno, ids)
    addcovar = _as_covar_frame(addcovar)
    keep = set(pheno.index) & set(ids)
    if addcovar is not None:
        keep &= set(addcovar.dropna().index)
    ids = [i for i in ids if i in keep]
    cov, _ = covar_matrix(addcovar, ids)
    out = {}
    for mask, cols in missing_batches(pheno.loc[ids]):
        sub = [i for i, m in zip(ids, mask) if m]
        d, U = _eigen(_kinship_matrix(kinship, sub))
        c = cov[mask]
        c = c[:, independent_covariates(c)]
        X0 = U.T @ np.column_stack([np.ones(len(sub)), c])
        raw = pheno.loc[sub].values[:, cols]
        Y = U.T @ raw
        for jj, j in enumerate(cols):
            constant = np.ptp(raw[:, jj]) == 0
            out[pheno.columns[j]] = 0.0 if constant else _fit_hsq(d, Y[:, jj], X0, reml)
    return pd.Series(out, dtype=float).reindex(pheno.columns)


class _NullFit:
    """Ajustement sous H0 pour un lot de phénotypes (mode mixte)."""

    def __init__(self, K, Y, cov, reml):
        self.d, self.U = _eigen(K)
        n = Y.shape[0]
        self.Ut = self.U.T
        self.Yrot = self.Ut @ Y
        self.X0rot = self.Ut @ np.column_stack([np.ones(n), cov])
        self.covrot = self.Ut @ cov
        self.flat = np.ptp(Y, axis=0) == 0
        self.hsq = np.array([
            0.0 if self.flat[j] else _fit_hsq(self.d, self.Yrot[:, j], self.X0rot, reml)
            for j in range(Y.shape[1])
        ])

    def sqrt_weights(self, j):
        return 1.0 / np.sqrt(self.hsq[j] * self.d + (1.0 - self.hsq[j]))


# ============================================================
# Scan génomique
# ============================================================

def _scan_hk(P, Y, cov):
    """P : (n, k, n_pos) ; Y : (n, m) ; cov : (n, c). Retourne (n_pos, m)."""
    n = Y.shape[0]
    X0 = np.column_stack([np.ones(n), cov])
    rss0 = _rss(X0, Y)
    lod = np.empty((P.shape[2], Y.shape[1]))
    for j in range(P.shape[2]):
        rss1 = _rss(np.column_stack([P[:, :, j], cov]), Y)
        lod[j] = _lod(n, rss0, rss1)
    # phénotype constant : aucun signal
    lod[:, np.ptp(Y, axis=0) == 0] = 0.0
    return lod


def _scan_lmm(P, null):
    """Scan mixte avec héritabilité fixée à sa valeur sous H0."""
    n, m = null.Yrot.shape
    Prot = np.einsum('ij,jkp->ikp', null.Ut, P)
    lod = np.empty((P.shape[2], m))
    for col in range(m):
        sw = null.sqrt_weights(col)
        y = null.Yrot[:, [col]] * sw[:, None]
        rss0 = _rss(null.X0rot * sw[:, None], y)
        covw = null.covrot * sw[:, None]
        for j in range(P.shape[2]):
            X1 = np.column_stack([Prot[:, :, j] * sw[:, None], covw])
            lod[j, col] = _lod(n, rss0, _rss(X1, y))[0]
    lod[:, null.flat] = 0.0
    return lod


def scan1(pr, pheno, kinship=None, addcovar=None, cores=1, reml=True, quiet=True):
    """
    Scan génomique : LOD score à chaque position pour chaque phénotype.

    Parameters
    ----------
    pr : GenoProb
    pheno : DataFrame (individus × phénotypes), Series ou array
    kinship : DataFrame ou dict {chr: DataFrame}, optional
        Sans kinship : Haley-Knott. DataFrame : modèle mixte.
        dict : modèle mixte LOCO.
    addcovar : DataFrame, optional
        Covariables additives (les qualitatives sont codées en indicatrices)
    cores : int
        Nombre de threads (0 = tous les CPU)
    reml : bool
        REML (True) ou ML pour l'héritabilité

    Returns
    -------
    DataFrame indexé par (chr, marker), une colonne par phénotype.
    attrs['sample_size'] : effectif par phénotype ;
    attrs['hsq'] : héritabilités estimées (modèle mixte).
    """
    pheno = as_pheno_frame(pheno, pr.ind_ids)
    addcovar = _as_covar_frame(addcovar)
    loco = isinstance(kinship, dict)
    if loco:
        kinship = {str(c): k for c, k in kinship.items()}
        missing_k = [c for c in pr.chromosomes if c not in kinship]
        if missing_k:
            raise ConfigurationError(f"Kinship LOCO absent pour les chr {missing_k}")

    ids = common_ids(pr, pheno, kinship, addcovar)
    cov, _ = covar_matrix(addcovar, ids)
    ph = pheno.loc[ids]
    batches = missing_batches(ph)
    row_idx = np.array([pr.ind_ids.index(i) for i in ids])

    if not quiet:
        mode = 'Haley-Knott' if kinship is None else ('LMM-LOCO' if loco else 'LMM')
        print(f"  Scan ({mode}): {len(ids)} individus, {ph.shape[1]} phénotypes, "
              f"{len(pr)} chromosomes")

    def batch_data(b):
        mask, cols = batches[b]
        sub_ids = [i for i, m in zip(ids, mask) if m]
        c = cov[mask]
        return mask, cols, sub_ids, ph.values[mask][:, cols], c[:, independent_covariates(c)]

    shared_null = {}
    if kinship is not None and not loco:
        for b in range(len(batches)):
            mask, cols, sub_ids, Y, c = batch_data(b)
            if len(sub_ids) >= 2:
                shared_null[b] = _NullFit(_kinship_matrix(kinship, sub_ids), Y, c, reml)

    def run(unit):
        chrom, b = unit
        mask, cols, sub_ids, Y, c = batch_data(b)
        P = pr[chrom][row_idx[mask]]
        if len(sub_ids) < 2:
            return np.full((P.shape[2], len(cols)), np.nan), None
        if kinship is None:
            return _scan_hk(P, Y, c), None
        null = shared_null[b] if not loco else \
            _NullFit(_kinship_matrix(kinship[chrom], sub_ids), Y, c, reml)
        return _scan_lmm(P, null), null.hsq

    units = [(c, b) for c in pr.chromosomes for b in range(len(batches))]
    results = parallel_map(run, units, cores=cores, desc="Scan1", quiet=quiet)

    blocks = {c: np.full((pr.n_pos(c), ph.shape[1]), np.nan) for c in pr.chromosomes}
    hsq = {}
    for (chrom, b), (lod, h) in zip(units, results):
        cols = batches[b][1]
        blocks[chrom][:, cols] = lod
        if h is not None:
            key = chrom if loco else 'all'
            row = hsq.setdefault(key, np.full(ph.shape[1], np.nan))
            row[cols] = h

    index = pd.MultiIndex.from_tuples(
        [(c, name) for c in pr.chromosomes for name in pr.position_names(c)],
        names=['chr', 'marker'],
    )
    values = np.vstack([blocks[c] for c in pr.chromosomes]) if blocks else \
        np.empty((0, ph.shape[1]))
    out = pd.DataFrame(values, index=index, columns=ph.columns)
    out.attrs['sample_size'] = ph.notna().sum().to_dict()
    if hsq:
        out.attrs['hsq'] = pd.DataFrame(hsq, index=ph.columns).T
    return out


# ============================================================
# Effets QTL
# ============================================================

def scan1coef(pr, pheno, kinship=None, addcovar=None, se=False, reml=True):
    """
    Coefficients par classe de génotype le long d'un chromosome.

    À chaque position, le phénotype est régressé (sans intercept) sur les
    probabilités des classes de génotype : chaque individu contribue à
    chaque classe en proportion de sa probabilité. Les coefficients sont
    donc des moyennes phénotypiques par génotype.

    Parameters
    ----------
    pr : GenoProb restreint à un seul chromosome
    pheno : Series ou DataFrame à une colonne
    kinship : DataFrame, optional
        Moindres carrés généralisés avec l'héritabilité estimée sous H0
    addcovar : DataFrame, optional
    se : bool
        Calcule les erreurs standard (attrs['SE'])

    Returns
    -------
    DataFrame indexé par position, colonnes = génotypes puis covariables
    """
    if len(pr) != 1:
        raise ConfigurationError("scan1coef attend les probabilités d'un seul chromosome")
    chrom = pr.chromosomes[0]
    pheno = as_pheno_frame(pheno, pr.ind_ids)
    if pheno.shape[1] != 1:
        raise ConfigurationError("scan1coef attend un seul phénotype")
    if isinstance(kinship, dict):
        kinship = kinship[chrom]
    addcovar = _as_covar_frame(addcovar)

    ph = pheno.iloc[:, 0].dropna()
    ids = common_ids(pr, ph.to_frame(), kinship, addcovar)
    cov, cov_names = covar_matrix(addcovar, ids)
    kept = independent_covariates(cov)
    cov, cov_names = cov[:, kept], [cov_names[i] for i in kept]
    y = ph.loc[ids].values
    P = pr[chrom][[pr.ind_ids.index(i) for i in ids]]
    n, k, n_pos = P.shape

    if kinship is not None:
        null = _NullFit(_kinship_matrix(kinship, ids), y[:, None], cov, reml)
        sw = null.sqrt_weights(0)
        y = null.Yrot[:, 0] * sw
        P = np.einsum('ij,jkp->ikp', null.Ut, P) * sw[:, None, None]
        cov = null.covrot * sw[:, None]

    names = list(pr.genotypes(chrom)) + cov_names
    coef = np.empty((n_pos, len(names)))
    stderr = np.empty((n_pos, len(names)))
    for j in range(n_pos):
        X = np.column_stack([P[:, :, j], cov])
        beta, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
        coef[j] = beta
        if se:
            resid = y - X @ beta
            df = max(n - rank, 1)
            sigma2 = float(resid @ resid) / df
            stderr[j] = np.sqrt(np.clip(np.diag(np.linalg.pinv(X.T @ X)) * sigma2, 0, None))

    out = pd.DataFrame(coef, index=pr.position_names(chrom), columns=names)
    out.index.name = 'marker'
    out.attrs['genotypes'] = list(pr.genotypes(chrom))
    if se:
        out.attrs['SE'] = pd.DataFrame(stderr, index=out.index, columns=names)
    return out
