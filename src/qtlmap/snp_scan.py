"""
Association SNP par SNP dans les populations multiparentales.

Les génotypes des fondateurs à chaque SNP définissent un « strain
distribution pattern » (SDP) : l'ensemble des fondateurs portant l'allèle B.
Les probabilités d'allèles fondateurs sont ramenées, pour chaque SNP, à des
probabilités de génotype SNP (nombre d'allèles B), puis scannées comme des
pseudo-marqueurs. Les SNP de même SDP au même point de la carte donnent
le même LOD : un seul représentant est scanné.
"""

import numpy as np
import pandas as pd

from .config import GENO_AA, GENO_BB
from .genoprob import GenoProb
from .lod_engine import scan1
from .maps import map_list_to_df


def calc_sdp(geno):
    """
    Strain distribution patterns.

    Parameters
    ----------
    geno : array ou DataFrame (SNP × fondateurs), codes 1 (AA) / 3 (BB)

    Returns
    -------
    sdp : Series (si DataFrame) ou array d'entiers ; bit j = fondateur j porte B
    """
    frame = geno if isinstance(geno, pd.DataFrame) else None
    g = np.asarray(geno)
    if g.ndim != 2:
        raise ValueError("calc_sdp attend une matrice SNP × fondateurs")
    if not np.all(np.isin(g, (GENO_AA, GENO_BB))):
        raise ValueError("Les génotypes fondateurs doivent être codés 1 (AA) ou 3 (BB)")
    weights = 2 ** np.arange(g.shape[1], dtype=np.int64)
    sdp = ((g == GENO_BB).astype(np.int64) * weights).sum(axis=1)
    if frame is not None:
        return pd.Series(sdp, index=frame.index.astype(str), name='sdp')
    return sdp


def snpinfo_from_cross(cross, use_pmap=True):
    """
    Tableau des SNP informatifs (chr, pos, snp_id, sdp) à partir des
    génotypes fondateurs d'un croisement.
    """
    if not cross.has_founder_geno:
        raise ValueError("Le croisement n'a pas de génotypes fondateurs")
    smap = cross.pmap if (use_pmap and cross.pmap is not None) else cross.gmap
    info = map_list_to_df(smap, marker_column='snp_id')
    frames = []
    for chrom in cross.chr_names:
        fg = pd.DataFrame(cross.founder_geno(chrom).T, index=cross.gmap.names(chrom))
        complete = fg[fg.isin([GENO_AA, GENO_BB]).all(axis=1)]
        frames.append(calc_sdp(complete))
    sdp = pd.concat(frames) if frames else pd.Series(dtype=np.int64)
    full = 2 ** cross.n_founders - 1
    sdp = sdp[(sdp > 0) & (sdp < full)]
    info = info.loc[[s for s in info.index if s in sdp.index]].copy()
    info['sdp'] = sdp.loc[info.index].values
    return info


def _snp_ids(snpinfo):
    if 'snp_id' in snpinfo.columns:
        return snpinfo['snp_id'].astype(str).values
    return snpinfo.index.astype(str).values


def index_snps(gmap, snpinfo, tol=1e-8):
    """
    Situe chaque SNP sur la carte et regroupe les SNP équivalents.

    Colonnes ajoutées :
        interval : indice de la position de carte à gauche du SNP
        on_map   : SNP confondu avec une position de la carte
        pos_index: indice de la position de carte la plus proche
        index    : ligne du SNP représentant sa classe (chr, pos_index, sdp)

    Returns
    -------
    DataFrame trié par chromosome et position
    """
    required = {'chr', 'pos', 'sdp'}
    missing = required - set(snpinfo.columns)
    if missing:
        raise ValueError(f"snpinfo: colonnes manquantes {sorted(missing)}")

    info = snpinfo.copy()
    info['chr'] = info['chr'].astype(str)
    info['snp_id'] = _snp_ids(info)
    unknown = sorted(set(info['chr']) - set(gmap.chromosomes))
    if unknown:
        raise ValueError(f"snpinfo: chromosomes absents de la carte {unknown}")

    order = {c: i for i, c in enumerate(gmap.chromosomes)}
    info['_rank'] = info['chr'].map(order)
    info = info.sort_values(['_rank', 'pos'], kind='stable').drop(columns='_rank')
    info = info.reset_index(drop=True)

    interval = np.zeros(len(info), dtype=int)
    on_map = np.zeros(len(info), dtype=bool)
    pos_index = np.zeros(len(info), dtype=int)
    for chrom, rows in info.groupby('chr', sort=False).groups.items():
        rows = np.asarray(rows)
        mpos = gmap.values(chrom)
        spos = info.loc[rows, 'pos'].values.astype(float)
        left = np.clip(np.searchsorted(mpos, spos + tol, side='right') - 1, 0, len(mpos) - 1)
        right = np.clip(left + 1, 0, len(mpos) - 1)
        nearest = np.where(np.abs(mpos[right] - spos) < np.abs(spos - mpos[left]), right, left)
        interval[rows] = left
        pos_index[rows] = nearest
        on_map[rows] = np.abs(mpos[nearest] - spos) <= tol

    info['interval'] = interval
    info['on_map'] = on_map
    info['pos_index'] = pos_index
    key = list(zip(info['chr'], info['pos_index'], info['sdp']))
    first = {}
    info['index'] = [first.setdefault(k, i) for i, k in enumerate(key)]
    return info


def _snp_classes(crosstype):
    """Nombres d'allèles B possibles pour un génotype SNP."""
    return [0, 2] if crosstype.homozygous else [0, 1, 2]


def genoprob_to_snpprob(pr, snpinfo):
    """
    Probabilités de génotype aux SNP représentants (voir index_snps).

    Returns
    -------
    GenoProb dont les positions sont les SNP représentants
    """
    pairs = np.array(pr.crosstype.founder_pairs)
    classes = _snp_classes(pr.crosstype)
    cls_names = {0: 'AA', 1: 'AB', 2: 'BB'}
    reps = snpinfo[snpinfo['index'] == snpinfo.index]

    probs, names = {}, {}
    for chrom, block in reps.groupby('chr', sort=False):
        arr = pr[chrom]
        out = np.empty((pr.n_ind, len(classes), len(block)))
        for k, (sdp, j) in enumerate(zip(block['sdp'].values, block['pos_index'].values)):
            carries_b = (int(sdp) >> np.arange(pr.crosstype.n_founders)) & 1
            n_b = carries_b[pairs[:, 0]] + carries_b[pairs[:, 1]]
            p = arr[:, :, j]
            for c, cls in enumerate(classes):
                out[:, c, k] = p[:, n_b == cls].sum(axis=1)
        probs[chrom] = out
        names[chrom] = list(block['snp_id'].values)

    genotypes = tuple(cls_names[c] for c in classes)
    return GenoProb(probs, pr.ind_ids, {c: genotypes for c in probs}, names,
                    pr.crosstype, alleles=('A', 'B'))


def scan1snps(pr, gmap, pheno, snpinfo, kinship=None, addcovar=None,
              keep_all_snps=False, cores=1, reml=True, quiet=True):
    """
    Scan d'association SNP par SNP.

    Parameters
    ----------
    pr : GenoProb (probabilités de génotype fondateur)
    gmap : GeneticMap
        Carte des positions de pr, dans l'échelle des positions de snpinfo
    pheno : DataFrame ou Series
    snpinfo : DataFrame (chr, pos, sdp, snp_id)
    keep_all_snps : bool
        Rapporte tous les SNP (chacun avec le LOD de son représentant)
        plutôt que les seuls représentants

    Returns
    -------
    dict {'lod': DataFrame indexé par (chr, snp), 'snpinfo': DataFrame}
    """
    if 'index' not in snpinfo.columns or 'pos_index' not in snpinfo.columns:
        snpinfo = index_snps(gmap, snpinfo)
    snpinfo = snpinfo.reset_index(drop=True)

    if not quiet:
        n_rep = int((snpinfo['index'] == snpinfo.index).sum())
        print(f"  Scan SNP: {len(snpinfo)} SNP, {n_rep} classes distinctes")

    snpprob = genoprob_to_snpprob(pr, snpinfo)
    lod = scan1(snpprob, pheno, kinship=kinship, addcovar=addcovar, cores=cores,
                reml=reml, quiet=quiet)

    if keep_all_snps:
        rep_ids = snpinfo['snp_id'].values[snpinfo['index'].values]
        keys = list(zip(snpinfo['chr'], rep_ids))
        values = lod.loc[keys].values
        index = pd.MultiIndex.from_arrays([snpinfo['chr'].values, snpinfo['snp_id'].values],
                                          names=['chr', 'marker'])
        lod = pd.DataFrame(values, index=index, columns=lod.columns)
        info = snpinfo
    else:
        info = snpinfo[snpinfo['index'] == snpinfo.index].reset_index(drop=True)
    return {'lod': lod, 'snpinfo': info}
