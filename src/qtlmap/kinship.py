"""
Matrices d'apparentement à partir des probabilités de génotype.

K[i, j] = moyenne sur les positions de la probabilité que deux allèles tirés
chez i et j soient identiques par l'origine fondatrice :
    K = (1/p) Σ_pos A_pos A_posᵀ
où A_pos (n_ind × n_allèles) contient les dosages d'allèles fondateurs.

La variante LOCO (leave-one-chromosome-out) exclut la contribution du
chromosome testé, par soustraction : K_c = (S_total - S_c) / (p - p_c).
"""

import numpy as np
import pandas as pd

from .config import ConfigurationError
from .genoprob import genoprob_to_alleleprob
from .parallel import parallel_map

KINSHIP_TYPES = ('overall', 'loco', 'chr')


def _chromosome_sum(arr):
    """Σ_pos A A' pour un chromosome, arr de forme (n_ind, n_allèles, n_pos)."""
    return np.einsum('iap,jap->ij', arr, arr)


def calc_kinship(pr, type='overall', omit_x=False, cores=1, quiet=True):
    """
    Parameters
    ----------
    pr : GenoProb
    type : str
        'overall' : matrice unique sur tout le génome
        'loco'    : une matrice par chromosome, sans ce chromosome
        'chr'     : une matrice par chromosome, ce chromosome seul
    omit_x : bool
        Exclut le chromosome X du calcul
    cores : int

    Returns
    -------
    DataFrame (individus × individus) ou dict {chr: DataFrame}
    """
    if type not in KINSHIP_TYPES:
        raise ConfigurationError(f"type de kinship inconnu: {type} (attendu: {KINSHIP_TYPES})")

    ap = genoprob_to_alleleprob(pr)
    chroms = ap.chromosomes
    if omit_x:
        chroms = [c for c in chroms if c.upper() != 'X']
    if not chroms:
        raise ConfigurationError("Aucun chromosome pour le calcul du kinship")
    if type == 'loco' and len(chroms) < 2:
        raise ConfigurationError("LOCO nécessite au moins 2 chromosomes")

    if not quiet:
        print(f"  Kinship ({type}): {ap.n_ind} individus, {len(chroms)} chromosomes")

    sums = parallel_map(lambda c: _chromosome_sum(ap[c]), chroms, cores=cores,
                        desc="Kinship", quiet=quiet)
    counts = [ap.n_pos(c) for c in chroms]
    ids = ap.ind_ids

    def as_frame(mat):
        mat = 0.5 * (mat + mat.T)
        return pd.DataFrame(mat, index=ids, columns=ids)

    if type == 'chr':
        return {c: as_frame(s / n) for c, s, n in zip(chroms, sums, counts) if n > 0}

    total = np.sum(sums, axis=0)
    n_total = sum(counts)
    if n_total == 0:
        raise ConfigurationError("Aucune position pour le calcul du kinship")

    if type == 'overall':
        return as_frame(total / n_total)

    loco = {}
    for c, s, n in zip(chroms, sums, counts):
        if n_total - n == 0:
            raise ConfigurationError(f"LOCO: aucune position hors du chr {c}")
        loco[c] = as_frame((total - s) / (n_total - n))
    # chromosomes exclus (omit_x) : on utilise la matrice globale
    for c in ap.chromosomes:
        if c not in loco:
            loco[c] = as_frame(total / n_total)
    return {c: loco[c] for c in ap.chromosomes}
