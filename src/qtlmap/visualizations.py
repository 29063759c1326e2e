"""
Visualisations pour qtlmap.

Chaque fonction dessine sur un axe matplotlib (créé si absent) et le retourne :
1. Courbes de LOD genome-wide (scan1, association SNP)
2. Effets QTL le long d'un chromosome
3. Probabilités de génotype et génotypes reconstruits d'un individu
4. Pics et intervalles de support
5. Phénotype en fonction du génotype
"""

import os

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
from matplotlib.patches import Rectangle

# Couleurs des allèles fondateurs / génotypes
HAPLOTYPE_COLORS = [
    '#e41a1c',  # rouge
    '#377eb8',  # bleu
    '#4daf4a',  # vert
    '#984ea3',  # violet
    '#ff7f00',  # orange
    '#a65628',  # marron
    '#f781bf',  # rose
    '#999999',  # gris
    '#66c2a5',  # turquoise
    '#fc8d62',  # saumon
    '#8da0cb',  # lavande
    '#e78ac3',  # magenta
    '#a6d854',  # vert clair
    '#ffd92f',  # jaune
    '#e5c494',  # beige
    '#b3b3b3',  # gris clair
    '#1b9e77',  # teal
    '#d95f02',  # orange foncé
    '#7570b3',  # indigo
    '#e7298a',  # rose vif
]

# Alternance des couleurs entre chromosomes
CHR_COLORS = ('#377eb8', '#4daf4a')


def _get_ax(ax, figsize=(12, 5)):
    if ax is None:
        _, ax = plt.subplots(figsize=figsize)
    return ax


def _positions(out, gmap, chrom):
    names = list(out.xs(chrom, level='chr').index)
    return gmap[chrom].loc[names].values


def _genome_layout(chroms, gmap, gap):
    """Décalage de chaque chromosome sur l'axe x (positions mises bout à bout)."""
    offsets, ticks = {}, []
    cum = 0.0
    for chrom in chroms:
        vals = gmap.values(chrom)
        offsets[chrom] = cum - vals[0]
        ticks.append((cum + (vals[-1] - vals[0]) / 2, chrom))
        cum += (vals[-1] - vals[0]) + gap
    return offsets, ticks


def _select_chr(available, chr):
    if chr is None:
        return list(available)
    wanted = [str(c) for c in np.atleast_1d(chr)]
    unknown = [c for c in wanted if c not in available]
    if unknown:
        raise ValueError(f"Chromosome(s) absent(s): {unknown}")
    return [c for c in available if c in wanted]


def _resolve_ind(ind_ids, ind):
    if isinstance(ind, (int, np.integer)):
        return int(ind)
    return list(ind_ids).index(str(ind))


# ============================================================
# LOD scores
# ============================================================

def plot_scan1(out, gmap, lodcolumn=0, chr=None, gap=25.0, threshold=None, ax=None,
               colors=CHR_COLORS, **kwargs):
    """
    Courbe de LOD genome-wide pour une colonne de phénotype.

    Parameters
    ----------
    out : DataFrame (résultat de scan1)
    gmap : GeneticMap
    lodcolumn : int ou str
    chr : str ou list, optional
    gap : float
        Espace entre chromosomes (unités de la carte)
    threshold : float, optional
        Ligne horizontale au seuil de significativité
    """
    ax = _get_ax(ax)
    col = out.columns[lodcolumn] if isinstance(lodcolumn, (int, np.integer)) else lodcolumn
    chroms = _select_chr(list(pd.unique(out.index.get_level_values('chr'))), chr)
    offsets, ticks = _genome_layout(chroms, gmap, gap)

    for i, chrom in enumerate(chroms):
        x = _positions(out, gmap, chrom) + offsets[chrom]
        y = out.xs(chrom, level='chr')[col].values
        ax.plot(x, y, color=colors[i % len(colors)], linewidth=1.2, **kwargs)

    if threshold is not None:
        ax.axhline(y=threshold, color='red', linestyle='--', linewidth=1, alpha=0.7,
                   label=f'Seuil LOD = {threshold:.2f}')
        ax.legend(loc='upper right')
    ax.set_ylabel('LOD score', fontsize=12)
    ax.set_ylim(bottom=0)
    if len(chroms) > 1:
        ax.set_xticks([t[0] for t in ticks])
        ax.set_xticklabels([t[1] for t in ticks], fontsize=8)
        ax.set_xlabel('Chromosome', fontsize=10)
    else:
        ax.set_xlabel(f'Chr {chroms[0]} position', fontsize=10)
    ax.set_title(str(col), fontsize=13, fontweight='bold')
    return ax


def plot_snpasso(scan1output, snpinfo, lodcolumn=0, gap=25.0, ax=None, threshold=None):
    """
    Nuage des LOD d'association SNP (résultat de scan1snps).

    Parameters
    ----------
    scan1output : DataFrame indexé par (chr, snp)
    snpinfo : DataFrame (chr, pos, snp_id)
    """
    ax = _get_ax(ax)
    col = scan1output.columns[lodcolumn] if isinstance(lodcolumn, (int, np.integer)) \
        else lodcolumn
    pos = {(str(c), str(s)): p for c, s, p in
           zip(snpinfo['chr'], snpinfo['snp_id'], snpinfo['pos'])}
    chroms = list(pd.unique(scan1output.index.get_level_values('chr')))

    cum = 0.0
    ticks = []
    for i, chrom in enumerate(chroms):
        block = scan1output.xs(chrom, level='chr')[col]
        x = np.array([pos[(chrom, s)] for s in block.index], dtype=float)
        if len(x) == 0:
            continue
        start = x.min()
        ax.scatter(x - start + cum, block.values, s=6,
                   color=CHR_COLORS[i % len(CHR_COLORS)], rasterized=True)
        ticks.append((cum + (x.max() - start) / 2, chrom))
        cum += (x.max() - start) + gap

    if threshold is not None:
        ax.axhline(y=threshold, color='red', linestyle='--', linewidth=1, alpha=0.7)
    ax.set_xticks([t[0] for t in ticks])
    ax.set_xticklabels([t[1] for t in ticks], fontsize=8)
    ax.set_xlabel('Chromosome', fontsize=10)
    ax.set_ylabel('LOD score', fontsize=12)
    ax.set_ylim(bottom=0)
    return ax


# ============================================================
# Effets
# ============================================================

def plot_coef(coef, gmap, columns=None, chr=None, ax=None, colors=HAPLOTYPE_COLORS,
              se=True):
    """
    Effets QTL (résultat de scan1coef) le long d'un chromosome.

    Parameters
    ----------
    coef : DataFrame indexé par position
    columns : list, optional
        Colonnes à tracer (défaut : toutes sauf les covariables)
    se : bool
        Trace ± 1 SE si attrs['SE'] est présent
    """
    ax = _get_ax(ax)
    if chr is None:
        first = coef.index[0]
        chr = next(c for c in gmap.chromosomes if first in gmap[c].index)
    x = gmap[str(chr)].loc[list(coef.index)].values
    if columns is None:
        columns = [c for c in coef.columns if c in coef.attrs.get('genotypes', coef.columns)]
    stderr = coef.attrs.get('SE') if se else None

    for i, col in enumerate(columns):
        color = colors[i % len(colors)]
        ax.plot(x, coef[col].values, color=color, linewidth=1.5, label=str(col))
        if stderr is not None:
            lo = coef[col].values - stderr[col].values
            hi = coef[col].values + stderr[col].values
            ax.fill_between(x, lo, hi, color=color, alpha=0.15, linewidth=0)

    ax.set_xlabel(f'Chr {chr} position', fontsize=10)
    ax.set_ylabel('Effet QTL', fontsize=12)
    ax.legend(loc='upper right', fontsize=8, ncol=max(1, len(columns) // 10 + 1))
    return ax


# ============================================================
# Génotypes
# ============================================================

def plot_genoprob(pr, gmap, ind=0, chr=None, threshold=0.0, ax=None, cmap='Purples'):
    """
    Probabilités de génotype d'un individu le long d'un chromosome (heatmap).

    Parameters
    ----------
    ind : int (rang) ou str (identifiant)
    chr : str, optional
        Défaut : premier chromosome
    threshold : float
        Probabilités < threshold affichées à 0
    """
    ax = _get_ax(ax, figsize=(12, 4))
    chrom = str(chr) if chr is not None else pr.chromosomes[0]
    i = _resolve_ind(pr.ind_ids, ind)
    probs = np.array(pr[chrom][i])
    probs[probs < threshold] = 0.0
    x = gmap[chrom].loc[pr.position_names(chrom)].values
    genotypes = pr.genotypes(chrom)

    extent = (x[0], x[-1], len(genotypes) - 0.5, -0.5) if len(x) > 1 else None
    ax.imshow(probs, aspect='auto', interpolation='nearest', cmap=cmap,
              vmin=0.0, vmax=1.0, extent=extent)
    ax.set_yticks(range(len(genotypes)))
    ax.set_yticklabels(genotypes, fontsize=8)
    ax.set_xlabel(f'Chr {chrom} position', fontsize=10)
    ax.set_title(f'Individu {pr.ind_ids[i]}', fontsize=12)
    return ax


def plot_onegeno(geno, gmap, ind=0, colors=HAPLOTYPE_COLORS, ax=None, width=0.5,
                 labels=None):
    """
    Génotypes reconstruits d'un individu (résultat de maxmarg) sur tous les
    chromosomes : une barre verticale par chromosome, colorée par génotype.

    Parameters
    ----------
    geno : dict {chr: DataFrame (individus × positions)} de génotypes 1..k
    ind : int (rang) ou str (identifiant)
    labels : sequence of str, optional
        Noms des génotypes pour la légende
    """
    ax = _get_ax(ax, figsize=(10, 6))
    chroms = [c for c in gmap.chromosomes if c in geno]
    seen = set()
    ind_name = None
    for k, chrom in enumerate(chroms):
        frame = geno[chrom]
        i = _resolve_ind(frame.index, ind)
        ind_name = frame.index[i]
        calls = frame.iloc[i]
        pos = gmap[chrom].loc[list(frame.columns)].values
        # bornes des segments : milieux entre positions voisines
        mids = np.concatenate([[pos[0]], (pos[1:] + pos[:-1]) / 2, [pos[-1]]])
        ax.add_patch(Rectangle((k - width / 2, pos[0]), width, pos[-1] - pos[0],
                               fill=False, edgecolor='black', linewidth=0.8))
        for j, g in enumerate(calls.values):
            if pd.isna(g):
                continue
            g = int(g)
            seen.add(g)
            ax.add_patch(Rectangle((k - width / 2, mids[j]), width, mids[j + 1] - mids[j],
                                   color=colors[(g - 1) % len(colors)], linewidth=0))

    ax.set_xlim(-0.5, len(chroms) - 0.5)
    lo = min(gmap.values(c)[0] for c in chroms)
    hi = max(gmap.values(c)[-1] for c in chroms)
    ax.set_ylim(hi, lo)
    ax.set_xticks(range(len(chroms)))
    ax.set_xticklabels(chroms)
    ax.set_xlabel('Chromosome', fontsize=10)
    ax.set_ylabel('Position', fontsize=10)
    if ind_name is not None:
        ax.set_title(f'Individu {ind_name}', fontsize=12)
    if labels is not None and seen:
        handles = [Rectangle((0, 0), 1, 1, color=colors[(g - 1) % len(colors)])
                   for g in sorted(seen)]
        ax.legend(handles, [labels[g - 1] for g in sorted(seen)], loc='center left',
                  bbox_to_anchor=(1.0, 0.5), fontsize=8)
    return ax


# ============================================================
# Pics
# ============================================================

def plot_peaks(peaks, gmap, ax=None, gap=25.0, colors=HAPLOTYPE_COLORS):
    """
    Position des pics (points) et intervalles de support (segments), une ligne
    par phénotype, chromosomes mis bout à bout.
    """
    ax = _get_ax(ax, figsize=(12, 4))
    chroms = gmap.chromosomes
    offsets, ticks = _genome_layout(chroms, gmap, gap)
    lodcolumns = list(pd.unique(peaks['lodcolumn'])) if len(peaks) else []

    for row in peaks.itertuples(index=False):
        y = lodcolumns.index(row.lodcolumn)
        color = colors[y % len(colors)]
        off = offsets[str(row.chr)]
        if 'ci_lo' in peaks.columns:
            ax.plot([row.ci_lo + off, row.ci_hi + off], [y, y], color=color, linewidth=2)
        ax.plot(row.pos + off, y, 'o', color=color, markersize=6)

    for chrom in chroms[1:]:
        ax.axvline(x=offsets[chrom] + gmap.values(chrom)[0] - gap / 2,
                   color='lightgrey', linewidth=0.5, alpha=0.5)
    ax.set_xticks([t[0] for t in ticks])
    ax.set_xticklabels([t[1] for t in ticks], fontsize=8)
    ax.set_xlabel('Chromosome', fontsize=10)
    ax.set_yticks(range(len(lodcolumns)))
    ax.set_yticklabels([str(c) for c in lodcolumns], fontsize=8)
    ax.set_ylim(-0.5, max(len(lodcolumns), 1) - 0.5)
    return ax


# ============================================================
# Phénotype × génotype
# ============================================================

def pxg_summary(geno, pheno):
    """
    Moyenne, erreur standard et effectif du phénotype par génotype.

    Parameters
    ----------
    geno : Series (génotype par individu, manquant = NA)
    pheno : Series (phénotype par individu)

    Returns
    -------
    DataFrame indexé par génotype : mean, se, n
    """
    geno = pd.Series(geno).copy()
    pheno = pd.Series(pheno).copy()
    geno.index = geno.index.astype(str)
    pheno.index = pheno.index.astype(str)
    df = pd.DataFrame({'geno': geno, 'pheno': pheno}).dropna()
    grouped = df.groupby('geno')['pheno']
    out = pd.DataFrame({'mean': grouped.mean(), 'n': grouped.size()})
    out['se'] = grouped.std(ddof=1) / np.sqrt(out['n'])
    return out[['mean', 'se', 'n']]


def plot_pxg(geno, pheno, sort=True, SEmult=None, omit_points=False, jitter=0.2,
             ax=None, seed=0, xlab=None, colors=HAPLOTYPE_COLORS):
    """
    Phénotype en fonction du génotype à un locus : un groupe par génotype.

    Parameters
    ----------
    geno : Series (génotype par individu, ex. maxmarg à une position)
    pheno : Series
    sort : bool
        Groupes triés par moyenne phénotypique décroissante
    SEmult : float, optional
        Trace moyenne ± SEmult · SE pour chaque groupe
    omit_points : bool
        N'affiche pas les individus
    """
    ax = _get_ax(ax, figsize=(7, 5))
    stats = pxg_summary(geno, pheno)
    if sort:
        stats = stats.sort_values('mean', ascending=False)

    geno = pd.Series(geno).copy()
    pheno = pd.Series(pheno).copy()
    geno.index = geno.index.astype(str)
    pheno.index = pheno.index.astype(str)
    df = pd.DataFrame({'geno': geno, 'pheno': pheno}).dropna()
    rng = np.random.default_rng(seed)

    for y, (g, row) in enumerate(stats.iterrows()):
        color = colors[y % len(colors)]
        if not omit_points:
            values = df.loc[df['geno'] == g, 'pheno'].values
            ax.scatter(values, y + rng.uniform(-jitter, jitter, len(values)), s=12,
                       color=color, alpha=0.6)
        if SEmult is not None:
            half = SEmult * (row['se'] if np.isfinite(row['se']) else 0.0)
            ax.plot([row['mean'] - half, row['mean'] + half], [y, y], color='black',
                    linewidth=1.5)
            ax.plot([row['mean']] * 2, [y - 0.3, y + 0.3], color='black', linewidth=2)

    ax.set_yticks(range(len(stats)))
    ax.set_yticklabels([str(g) for g in stats.index])
    ax.set_ylabel('Génotype', fontsize=10)
    ax.set_xlabel(xlab if xlab is not None else str(pheno.name or 'Phénotype'), fontsize=10)
    return ax


def save_figure(fig, filepath, dpi=150):
    """Sauvegarde une figure (ou la figure d'un axe) et la ferme."""
    if hasattr(fig, 'figure') and not isinstance(fig, plt.Figure):
        fig = fig.figure
    os.makedirs(os.path.dirname(os.path.abspath(filepath)), exist_ok=True)
    fig.savefig(filepath, dpi=dpi, bbox_inches='tight', facecolor='white')
    plt.close(fig)
    print(f"  → {filepath}")
    return filepath
