"""
Détection des pics de LOD score et intervalles de support.
"""

import numpy as np
import pandas as pd

from .config import ConfigurationError

PEAK_COLUMNS = ['lodindex', 'lodcolumn', 'chr', 'pos', 'lod']
SORT_MODES = ('lodindex', 'pos', 'lod')


def _scan_chromosomes(out):
    return list(pd.unique(out.index.get_level_values('chr')))


def _chr_positions(out, gmap, chrom):
    """Noms et positions (dans l'échelle de gmap) des lignes du scan pour un chr."""
    names = list(out.xs(chrom, level='chr').index)
    if chrom not in gmap:
        raise ValueError(f"Chr {chrom} absent de la carte")
    cmap = gmap[chrom]
    missing = [m for m in names if m not in cmap.index]
    if missing:
        raise ValueError(f"Chr {chrom}: positions du scan absentes de la carte: {missing[:5]}")
    return names, cmap.loc[names].values


def _resolve_column(out, lodcolumn):
    if isinstance(lodcolumn, (int, np.integer)):
        return out.columns[lodcolumn]
    if lodcolumn not in out.columns:
        raise KeyError(f"Colonne de LOD inconnue: {lodcolumn}")
    return lodcolumn


def _thresholds(threshold, columns):
    """Seuil scalaire, séquence, Series ou DataFrame (summary_scan1perm) → dict."""
    if threshold is None:
        raise ConfigurationError("threshold est requis")
    if isinstance(threshold, pd.DataFrame):
        threshold = threshold.iloc[0]
    if isinstance(threshold, pd.Series):
        missing = [c for c in columns if c not in threshold.index]
        if missing:
            raise ConfigurationError(f"Seuil manquant pour {missing}")
        return {c: float(threshold[c]) for c in columns}
    arr = np.atleast_1d(np.asarray(threshold, dtype=float))
    if arr.size == 1:
        return {c: float(arr[0]) for c in columns}
    if arr.size != len(columns):
        raise ConfigurationError(
            f"{arr.size} seuils pour {len(columns)} colonnes de LOD"
        )
    return dict(zip(columns, arr.astype(float)))


# ============================================================
# Algorithme par chromosome
# ============================================================

def local_maxima(lod, threshold):
    """
    Indices des maxima locaux >= threshold. Un plateau compte pour un seul
    maximum, repéré par sa position la plus à gauche.
    """
    n = len(lod)
    idx = []
    i = 0
    while i < n:
        j = i
        while j + 1 < n and lod[j + 1] == lod[i]:
            j += 1
        left = lod[i - 1] if i > 0 else -np.inf
        right = lod[j + 1] if j + 1 < n else -np.inf
        if lod[i] >= threshold and lod[i] > left and lod[i] > right:
            idx.append(i)
        i = j + 1
    return idx


def chromosome_peaks(lod, pos, threshold, peakdrop=np.inf, min_sep=0.0):
    """
    Pics d'un chromosome pour une colonne de LOD.

    Deux maxima voisins sont fusionnés (le plus haut est conservé) tant que
    le LOD entre eux ne redescend pas d'au moins peakdrop sous le plus bas.
    Les pics distants de moins de min_sep sont ensuite départagés par le LOD.

    Returns
    -------
    list d'indices triés par position
    """
    lod = np.where(np.isnan(lod), -np.inf, np.asarray(lod, dtype=float))
    peaks = local_maxima(lod, threshold)

    merged = True
    while merged and len(peaks) > 1:
        merged = False
        for k in range(len(peaks) - 1):
            a, b = peaks[k], peaks[k + 1]
            valley = np.min(lod[a:b + 1])
            if min(lod[a], lod[b]) - valley < peakdrop:
                peaks.pop(k + 1 if lod[a] >= lod[b] else k)
                merged = True
                break

    if min_sep > 0 and len(peaks) > 1:
        kept = []
        for p in sorted(peaks, key=lambda i: (-lod[i], i)):
            if all(abs(pos[p] - pos[q]) >= min_sep for q in kept):
                kept.append(p)
        peaks = sorted(kept)
    return peaks


def support_interval(lod, peak, drop):
    """Bornes (indices) des positions contiguës au pic avec LOD >= LOD_pic - drop."""
    lod = np.where(np.isnan(lod), -np.inf, np.asarray(lod, dtype=float))
    cutoff = lod[peak] - drop
    lo = peak
    while lo > 0 and lod[lo - 1] >= cutoff:
        lo -= 1
    hi = peak
    while hi < len(lod) - 1 and lod[hi + 1] >= cutoff:
        hi += 1
    return lo, hi


# ============================================================
# API publique
# ============================================================

def find_peaks(out, gmap, threshold=3.0, peakdrop=np.inf, drop=None, min_sep=0.0,
               thresholdX=None, peakdropX=None, dropX=None, sort_by='lodindex'):
    """
    Pics de LOD au-dessus du seuil, par chromosome et par phénotype.

    Parameters
    ----------
    out : DataFrame
        Résultat de scan1
    gmap : GeneticMap
        Carte donnant les positions (génétique ou physique)
    threshold : float, séquence, Series ou DataFrame
        Seuil unique, par phénotype, ou issu de summary_scan1perm
    peakdrop : float
        Baisse de LOD requise entre deux pics d'un même chromosome
        (inf = un seul pic par chromosome)
    drop : float, optional
        Intervalle de support à LOD_pic - drop (colonnes ci_lo, ci_hi)
    min_sep : float
        Distance minimale entre deux pics d'un même chromosome
    thresholdX, peakdropX, dropX : optional
        Valeurs spécifiques au chromosome X ; avec dropX seul, les pics
        des autres chromosomes ont ci_lo et ci_hi manquants
    sort_by : str
        'lodindex', 'pos' ou 'lod' (décroissant)

    Returns
    -------
    DataFrame (vide si aucun pic)
    """
    if sort_by not in SORT_MODES:
        raise ConfigurationError(f"sort_by doit être parmi {SORT_MODES}, reçu: {sort_by}")
    peakdrop_x = peakdrop if peakdropX is None else peakdropX
    drop_x = drop if dropX is None else dropX
    for name, pdrop, d in (('', peakdrop, drop), ('X', peakdrop_x, drop_x)):
        if pdrop is None or not pdrop > 0:
            raise ConfigurationError(f"peakdrop{name} doit être > 0, reçu: {pdrop}")
        if d is not None and not 0 <= d <= pdrop:
            raise ConfigurationError(
                f"drop{name} doit être dans [0, peakdrop{name}], reçu: {d}"
            )
    if min_sep is None or min_sep < 0:
        raise ConfigurationError(f"min_sep doit être >= 0, reçu: {min_sep}")

    columns = list(out.columns)
    thr = _thresholds(threshold, columns)
    thr_x = _thresholds(thresholdX, columns) if thresholdX is not None else thr

    chroms = _scan_chromosomes(out)
    chr_rank = {c: i for i, c in enumerate(chroms)}
    rows = []
    for chrom in chroms:
        names, pos = _chr_positions(out, gmap, chrom)
        block = out.xs(chrom, level='chr')
        is_x = chrom.upper() == 'X'
        for lodindex, col in enumerate(columns, start=1):
            lod = block[col].values
            t = thr_x[col] if is_x else thr[col]
            pd_ = peakdrop_x if is_x else peakdrop
            d = drop_x if is_x else drop
            for p in chromosome_peaks(lod, pos, t, pd_, min_sep):
                row = {'lodindex': lodindex, 'lodcolumn': col, 'chr': chrom,
                       'pos': float(pos[p]), 'lod': float(lod[p])}
                if d is not None:
                    lo, hi = support_interval(lod, p, d)
                    row['ci_lo'] = float(pos[lo])
                    row['ci_hi'] = float(pos[hi])
                rows.append(row)

    with_ci = drop is not None or drop_x is not None
    cols = PEAK_COLUMNS + (['ci_lo', 'ci_hi'] if with_ci else [])
    if not rows:
        return pd.DataFrame(columns=cols)

    peaks = pd.DataFrame(rows, columns=cols)
    peaks['_chr_rank'] = peaks['chr'].map(chr_rank)
    if sort_by == 'lodindex':
        peaks = peaks.sort_values(['lodindex', '_chr_rank', 'pos'], kind='stable')
    elif sort_by == 'pos':
        peaks = peaks.sort_values(['_chr_rank', 'pos', 'lodindex'], kind='stable')
    else:
        peaks = peaks.sort_values(['lod', 'lodindex'], ascending=[False, True], kind='stable')
    return peaks.drop(columns='_chr_rank').reset_index(drop=True)


def max_scan1(out, gmap=None, lodcolumn=0, chr=None):
    """
    Position du LOD maximal (éventuellement restreint à un ou des chromosomes).

    Returns
    -------
    DataFrame à une ligne (indexée par le marqueur) : chr, pos, LOD
    """
    col = _resolve_column(out, lodcolumn)
    sub = out
    if chr is not None:
        chroms = [str(c) for c in np.atleast_1d(chr)]
        sub = out[out.index.get_level_values('chr').isin(chroms)]
        if sub.empty:
            raise ValueError(f"Chromosome(s) absent(s) du scan: {chroms}")
    values = sub[col].values
    if np.all(np.isnan(values)):
        raise ValueError(f"Aucun LOD défini pour {col}")
    chrom, marker = sub.index[int(np.nanargmax(values))]
    row = {'chr': chrom}
    if gmap is not None:
        row['pos'] = float(gmap[chrom][marker])
    row[col] = float(np.nanmax(values))
    return pd.DataFrame([row], index=pd.Index([marker], name='marker'))


def lod_int(out, gmap, chr, lodcolumn=0, peakdrop=np.inf, drop=1.5):
    """
    Intervalle(s) de support à LOD_pic - drop sur un chromosome.

    Returns
    -------
    DataFrame (ci_lo, pos, ci_hi), une ligne par pic
    """
    col = _resolve_column(out, lodcolumn)
    chrom = str(chr)
    sub = out[out.index.get_level_values('chr') == chrom][[col]]
    if sub.empty:
        raise ValueError(f"Chromosome absent du scan: {chrom}")
    peaks = find_peaks(sub, gmap, threshold=0.0, peakdrop=peakdrop, drop=drop)
    return peaks[['ci_lo', 'pos', 'ci_hi']].reset_index(drop=True)
