"""
Probabilités de génotype par modèle de Markov caché (forward-backward).

Pour chaque individu, chromosome et position de la carte (marqueurs et
pseudo-marqueurs), calcule la distribution a posteriori des états de
génotype compte tenu des génotypes observés aux marqueurs, de la
distance génétique entre positions (Haldane) et du taux d'erreur.
"""

import numpy as np
import pandas as pd

from .config import (
    DEFAULT_ERROR_PROB, DEFAULT_MINPROB, ConfigurationError,
    validate_error_prob, validate_minprob,
)
from .maps import GeneticMap, find_index, mf_haldane
from .parallel import parallel_map


class GenoProb:
    """
    Tableau de probabilités {chr: array (n_ind, n_gen, n_pos)}, en lecture seule.

    Sert aussi pour les probabilités alléliques (alleleprob=True), où les
    « génotypes » sont les allèles fondateurs.
    """

    def __init__(self, probs, ind_ids, genotypes, position_names, crosstype,
                 alleles=None, alleleprob=False):
        """
        Parameters
        ----------
        probs : dict {chr: array (n_ind, n_gen, n_pos)}
        ind_ids : list
        genotypes : dict {chr: tuple de noms} ou tuple commun
        position_names : dict {chr: list}
        crosstype : CrossType
        """
        self.ind_ids = [str(i) for i in ind_ids]
        self.crosstype = crosstype
        self.alleles = alleles
        self.alleleprob = alleleprob
        self._probs = {}
        self._genotypes = {}
        self._names = {}
        for chrom, arr in probs.items():
            chrom = str(chrom)
            arr = np.array(arr, dtype=float, copy=True)
            if arr.ndim != 3 or arr.shape[0] != len(self.ind_ids):
                raise ValueError(f"Chr {chrom}: dimensions incorrectes {arr.shape}")
            gnames = genotypes[chrom] if isinstance(genotypes, dict) else genotypes
            if len(gnames) != arr.shape[1]:
                raise ValueError(f"Chr {chrom}: {arr.shape[1]} états pour {len(gnames)} noms")
            pnames = list(position_names[chrom])
            if len(pnames) != arr.shape[2]:
                raise ValueError(f"Chr {chrom}: {arr.shape[2]} positions pour {len(pnames)} noms")
            arr.flags.writeable = False
            self._probs[chrom] = arr
            self._genotypes[chrom] = tuple(gnames)
            self._names[chrom] = pnames

    def __repr__(self):
        kind = "alleleprob" if self.alleleprob else "genoprob"
        return (f"GenoProb({kind}, {self.n_ind} individus, {len(self._probs)} chromosomes, "
                f"{sum(a.shape[2] for a in self._probs.values())} positions)")

    def __getitem__(self, chrom):
        return self._probs[str(chrom)]

    def __contains__(self, chrom):
        return str(chrom) in self._probs

    def __iter__(self):
        return iter(self._probs)

    def __len__(self):
        return len(self._probs)

    def items(self):
        return self._probs.items()

    @property
    def chromosomes(self):
        return list(self._probs)

    @property
    def n_ind(self):
        return len(self.ind_ids)

    def n_gen(self, chrom):
        return self._probs[str(chrom)].shape[1]

    def n_pos(self, chrom):
        return self._probs[str(chrom)].shape[2]

    def genotypes(self, chrom):
        return self._genotypes[str(chrom)]

    def position_names(self, chrom):
        return list(self._names[str(chrom)])

    def position_index(self, chrom, name):
        try:
            return self._names[str(chrom)].index(str(name))
        except ValueError:
            raise KeyError(f"Position {name} absente du chr {chrom}") from None

    def subset(self, chr=None, ind=None):
        """Sous-ensemble par chromosome(s) et/ou individus."""
        chroms = self.chromosomes if chr is None else [str(c) for c in np.atleast_1d(chr)]
        missing = [c for c in chroms if c not in self._probs]
        if missing:
            raise KeyError(f"Chromosomes absents: {missing}")
        if ind is None:
            inds = self.ind_ids
            idx = slice(None)
        else:
            inds = [str(i) for i in ind]
            lookup = {iid: k for k, iid in enumerate(self.ind_ids)}
            unknown = [i for i in inds if i not in lookup]
            if unknown:
                raise KeyError(f"Individus inconnus: {unknown[:5]}")
            idx = [lookup[i] for i in inds]
        return GenoProb(
            {c: self._probs[c][idx] for c in chroms}, inds,
            {c: self._genotypes[c] for c in chroms},
            {c: self._names[c] for c in chroms},
            self.crosstype, alleles=self.alleles, alleleprob=self.alleleprob,
        )


# ============================================================
# Calcul des probabilités
# ============================================================

def calc_genoprob(cross, gmap=None, error_prob=DEFAULT_ERROR_PROB, cores=1, quiet=True):
    """
    Calcule les probabilités de génotype à chaque position de la carte.

    Parameters
    ----------
    cross : Cross
    gmap : GeneticMap, optional
        Carte (en général issue de insert_pseudomarkers). Par défaut
        cross.gmap.
    error_prob : float
        Probabilité d'erreur de génotypage, dans [0, 1)
    cores : int
        Nombre de threads (0 = tous les CPU)
    quiet : bool

    Returns
    -------
    GenoProb
    """
    error_prob = validate_error_prob(error_prob)
    if gmap is None:
        gmap = cross.gmap
    if not isinstance(gmap, GeneticMap):
        gmap = GeneticMap(gmap)

    chroms = [c for c in gmap.chromosomes]
    absent = [c for c in chroms if c not in cross.gmap]
    if absent:
        raise ValueError(f"Chromosomes de la carte absents du croisement: {absent}")

    if not quiet:
        print(f"  Probabilités de génotype: {len(chroms)} chromosomes, "
              f"{gmap.tot_pos} positions, error_prob={error_prob}")

    def one_chr(chrom):
        marker_names = cross.gmap.names(chrom)
        col = {m: i for i, m in enumerate(marker_names)}
        marker_idx = np.array([col.get(name, -1) for name in gmap.names(chrom)])
        return _genoprob_chromosome(
            cross.geno(chrom), marker_idx, gmap.values(chrom), cross.crosstype,
            error_prob, cross.founder_geno(chrom),
        )

    results = parallel_map(one_chr, chroms, cores=cores, desc="Genoprob", quiet=quiet)

    genotypes = cross.genotype_names()
    return GenoProb(
        dict(zip(chroms, results)), cross.ind_ids,
        {c: genotypes for c in chroms},
        {c: gmap.names(c) for c in chroms},
        cross.crosstype, alleles=cross.alleles,
    )


def _genoprob_chromosome(geno, marker_idx, positions, crosstype, error_prob,
                         founder_geno=None):
    """
    Forward-backward normalisé pour un chromosome, vectorisé sur les individus.

    Parameters
    ----------
    geno : array (n_ind, n_mar)
    marker_idx : array (n_pos,)
        Colonne de geno pour chaque position, -1 pour un pseudo-marqueur
    positions : array (n_pos,)
        Positions en cM

    Returns
    -------
    probs : array (n_ind, n_gen, n_pos)
    """
    n_ind = geno.shape[0]
    n_pos = len(positions)
    k = crosstype.n_gen

    # Moins de 2 marqueurs : a priori des allèles fondateurs
    if geno.shape[1] < 2 or np.sum(marker_idx >= 0) < 2:
        return np.broadcast_to(crosstype.init[None, :, None], (n_ind, k, n_pos)).copy()

    emit = np.ones((n_pos, n_ind, k))
    for j, mi in enumerate(marker_idx):
        if mi < 0:
            continue
        fg = founder_geno[:, mi] if founder_geno is not None else None
        table = crosstype.emission_table(error_prob, fg)
        emit[j] = table[geno[:, mi]]

    rf = mf_haldane(np.diff(positions))
    trans = [crosstype.transition_matrix(r) for r in rf]

    alpha = np.empty((n_pos, n_ind, k))
    alpha[0] = _normalize(crosstype.init[None, :] * emit[0], positions[0])
    for j in range(1, n_pos):
        alpha[j] = _normalize((alpha[j - 1] @ trans[j - 1]) * emit[j], positions[j])

    beta = np.empty((n_pos, n_ind, k))
    beta[-1] = 1.0
    for j in range(n_pos - 2, -1, -1):
        beta[j] = _normalize((beta[j + 1] * emit[j + 1]) @ trans[j].T, positions[j])

    post = alpha * beta
    post = post / post.sum(axis=2, keepdims=True)
    return post.transpose(1, 2, 0)


def _normalize(a, pos):
    s = a.sum(axis=1, keepdims=True)
    if np.any(s <= 0):
        bad = np.flatnonzero(s[:, 0] <= 0)
        raise ValueError(
            f"Génotypes incompatibles avec le modèle à {pos:.2f} cM "
            f"(individus {bad[:5].tolist()}); utiliser error_prob > 0"
        )
    return a / s


def genoprob_to_alleleprob(pr):
    """Convertit les probabilités de génotype en dosages d'allèles fondateurs."""
    if pr.alleleprob:
        return pr
    dosage = pr.crosstype.allele_dosage
    probs = {c: np.einsum('igp,ga->iap', arr, dosage) for c, arr in pr.items()}
    alleles = pr.crosstype.allele_names(pr.alleles)
    return GenoProb(
        probs, pr.ind_ids, {c: alleles for c in probs},
        {c: pr.position_names(c) for c in probs},
        pr.crosstype, alleles=pr.alleles, alleleprob=True,
    )


# ============================================================
# Génotypes les plus probables
# ============================================================

def _position_of(pr, gmap, chrom, pos):
    if gmap is None:
        raise ConfigurationError("gmap est requis pour localiser une position")
    name = gmap.names(chrom)[find_index(gmap, chrom, pos)]
    return pr.position_index(chrom, name)


def pull_genoprobpos(pr, gmap=None, chr=None, pos=None, marker=None):
    """
    Probabilités à une seule position (la plus proche de pos, ou marker).

    Returns
    -------
    DataFrame (individus × génotypes)
    """
    if chr is None:
        raise ConfigurationError("chr est requis")
    if marker is not None:
        j = pr.position_index(chr, marker)
    else:
        j = _position_of(pr, gmap, chr, pos)
    return pd.DataFrame(pr[chr][:, :, j], index=pr.ind_ids, columns=pr.genotypes(chr))


def call_genotypes(p, minprob):
    """
    Parameters
    ----------
    p : array (n_ind, n_gen)
    minprob : float

    Returns
    -------
    calls : array (n_ind,) d'indices 0-based, -1 si ambigu
    """
    best = np.argmax(p, axis=1)
    maxp = p[np.arange(p.shape[0]), best]
    return np.where(maxp >= minprob, best, -1)


def maxmarg(pr, gmap=None, minprob=DEFAULT_MINPROB, chr=None, pos=None,
            return_char=False, cores=1, quiet=True):
    """
    Génotype le plus probable par individu (maximum marginal).

    Un appel dont la probabilité maximale est inférieure à minprob est
    rapporté comme manquant.

    Parameters
    ----------
    pr : GenoProb
    gmap : GeneticMap, optional
        Requis si pos est donné
    minprob : float
        Seuil de confiance, dans (0, 1]
    chr, pos : optional
        Si les deux sont donnés, ne traite que la position la plus proche
    return_char : bool
        Noms de génotypes ('CC', 'CB', ...) au lieu d'indices 1-based

    Returns
    -------
    Series (chr + pos) ou dict {chr: DataFrame individus × positions}
    """
    minprob = validate_minprob(minprob)

    def to_output(calls, chrom):
        if return_char:
            names = np.array(pr.genotypes(chrom), dtype=object)
            return np.where(calls >= 0, names[np.maximum(calls, 0)], None)
        out = pd.array(calls + 1, dtype="Int64")
        out[calls < 0] = pd.NA
        return out

    if pos is not None:
        if chr is None:
            raise ConfigurationError("pos nécessite chr")
        chrom = str(chr)
        j = _position_of(pr, gmap, chrom, pos)
        calls = call_genotypes(pr[chrom][:, :, j], minprob)
        name = pr.position_names(chrom)[j]
        return pd.Series(to_output(calls, chrom), index=pr.ind_ids, name=name)

    chroms = pr.chromosomes if chr is None else [str(c) for c in np.atleast_1d(chr)]

    def one_chr(chrom):
        arr = pr[chrom]
        frame = {}
        for j, name in enumerate(pr.position_names(chrom)):
            frame[name] = to_output(call_genotypes(arr[:, :, j], minprob), chrom)
        return pd.DataFrame(frame, index=pr.ind_ids)

    results = parallel_map(one_chr, chroms, cores=cores, desc="Maxmarg", quiet=quiet)
    return dict(zip(chroms, results))
