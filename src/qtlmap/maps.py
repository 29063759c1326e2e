"""
Cartes génétiques et physiques : structure immuable, insertion de
pseudo-marqueurs, interpolation entre cartes.
"""

import numpy as np
import pandas as pd

from .config import ConfigurationError


def chr_sort_key(chrom):
    """Ordre naturel des chromosomes : 1, 2, ..., 10, puis X, Y, ..."""
    chrom = str(chrom)
    return (int(chrom), '') if chrom.isdigit() else (99, chrom)


def mf_haldane(d):
    """Fonction de Haldane : distance (cM) → fraction de recombinaison."""
    return 0.5 * (1.0 - np.exp(-2.0 * np.asarray(d, dtype=float) / 100.0))


def imf_haldane(r):
    """Inverse de Haldane : fraction de recombinaison → distance (cM)."""
    r = np.asarray(r, dtype=float)
    return -50.0 * np.log(1.0 - 2.0 * r)


class GeneticMap:
    """
    Carte ordonnée {chromosome: positions}, avec pour chaque position
    l'indication marqueur réel / pseudo-marqueur.
    """

    def __init__(self, positions, is_pseudo=None):
        """
        Parameters
        ----------
        positions : dict {chr: pd.Series ou dict {nom: position}}
        is_pseudo : dict {chr: array bool}, optional
            Par défaut toutes les positions sont des marqueurs réels.
        """
        self._pos = {}
        self._pseudo = {}
        for chrom, values in positions.items():
            chrom = str(chrom)
            s = pd.Series(values, dtype=float).copy()
            s.index = s.index.astype(str)
            if s.index.has_duplicates:
                dup = s.index[s.index.duplicated()].tolist()
                raise ValueError(f"Chr {chrom}: noms de positions dupliqués {dup[:5]}")
            if np.any(~np.isfinite(s.values)):
                raise ValueError(f"Chr {chrom}: positions manquantes ou infinies")
            if len(s) > 1 and np.any(np.diff(s.values) <= 0):
                raise ValueError(
                    f"Chr {chrom}: les positions doivent être strictement croissantes"
                )
            if is_pseudo is not None and chrom in is_pseudo:
                flags = np.array(is_pseudo[chrom], dtype=bool)
                if len(flags) != len(s):
                    raise ValueError(f"Chr {chrom}: is_pseudo de longueur incorrecte")
            else:
                flags = np.zeros(len(s), dtype=bool)
            flags.flags.writeable = False
            self._pos[chrom] = s
            self._pseudo[chrom] = flags

    def __repr__(self):
        return (f"GeneticMap({len(self._pos)} chromosomes, "
                f"{self.tot_pos} positions dont {self.n_pseudo} pseudo-marqueurs)")

    def __getitem__(self, chrom):
        return self._pos[str(chrom)].copy()

    def __contains__(self, chrom):
        return str(chrom) in self._pos

    def __iter__(self):
        return iter(self._pos)

    def __len__(self):
        return len(self._pos)

    def __eq__(self, other):
        if not isinstance(other, GeneticMap) or self.chromosomes != other.chromosomes:
            return False
        return all(
            self._pos[c].index.equals(other._pos[c].index)
            and np.array_equal(self._pos[c].values, other._pos[c].values)
            and np.array_equal(self._pseudo[c], other._pseudo[c])
            for c in self._pos
        )

    @property
    def chromosomes(self):
        return list(self._pos)

    def items(self):
        for chrom in self._pos:
            yield chrom, self[chrom]

    def is_pseudo(self, chrom):
        return self._pseudo[str(chrom)]

    def n_pos(self, chrom):
        return len(self._pos[str(chrom)])

    @property
    def tot_pos(self):
        return sum(len(s) for s in self._pos.values())

    @property
    def n_pseudo(self):
        return int(sum(f.sum() for f in self._pseudo.values()))

    def names(self, chrom):
        return list(self._pos[str(chrom)].index)

    def values(self, chrom):
        return self._pos[str(chrom)].values.copy()

    def span(self, chrom):
        v = self._pos[str(chrom)].values
        return float(v[-1] - v[0]) if len(v) else 0.0

    def subset(self, chrom):
        """Sous-carte restreinte à un ou plusieurs chromosomes."""
        chroms = [str(c) for c in np.atleast_1d(chrom)]
        missing = [c for c in chroms if c not in self._pos]
        if missing:
            raise KeyError(f"Chromosomes absents de la carte: {missing}")
        return GeneticMap({c: self._pos[c] for c in chroms},
                          {c: self._pseudo[c] for c in chroms})

    def markers_only(self):
        """Carte sans les pseudo-marqueurs."""
        return GeneticMap({c: s[~self._pseudo[c]] for c, s in self._pos.items()})


# ============================================================
# Densification
# ============================================================

def insert_pseudomarkers(gmap, step=1.0, off_end=0.0, stepwidth='fixed',
                         pseudomarker_map=None, tol=0.01):
    """
    Insère des pseudo-marqueurs régulièrement espacés dans la carte.

    Parameters
    ----------
    gmap : GeneticMap
    step : float
        Pas entre pseudo-marqueurs (cM)
    off_end : float
        Distance ajoutée au-delà des marqueurs terminaux
    stepwidth : str
        'fixed' : grille régulière sur tout le chromosome
        'max'   : nombre minimal de points par intervalle pour que
                  l'écart maximal soit <= step
    pseudomarker_map : dict {chr: positions}, optional
        Positions imposées (remplace la grille)
    tol : float
        Un point de grille à moins de tol d'un marqueur est supprimé

    Returns
    -------
    GeneticMap avec is_pseudo renseigné
    """
    if pseudomarker_map is None:
        if step is None or not step > 0:
            raise ConfigurationError(f"step doit être > 0, reçu: {step}")
        if off_end < 0:
            raise ConfigurationError(f"off_end doit être >= 0, reçu: {off_end}")
        if stepwidth not in ('fixed', 'max'):
            raise ConfigurationError(f"stepwidth inconnu: {stepwidth}")

    positions, flags = {}, {}
    for chrom, s in gmap.items():
        mpos = s.values
        if pseudomarker_map is not None:
            if chrom in pseudomarker_map:
                pseudo = np.asarray(pd.Series(pseudomarker_map[chrom]).values, dtype=float)
            else:
                pseudo = np.array([])
        elif len(mpos) == 0:
            pseudo = np.array([])
        elif stepwidth == 'fixed':
            pseudo = _fixed_grid(mpos, step, off_end, tol)
        else:
            pseudo = _max_grid(mpos, step, off_end)

        names = [f"c{chrom}.loc{k + 1}" for k in range(len(pseudo))]
        clash = set(names) & set(s.index)
        if clash:
            raise ValueError(f"Chr {chrom}: noms de pseudo-marqueurs déjà utilisés {sorted(clash)[:3]}")

        all_pos = np.concatenate([mpos, pseudo])
        all_names = list(s.index) + names
        all_flags = np.concatenate([np.zeros(len(mpos), bool), np.ones(len(pseudo), bool)])
        order = np.argsort(all_pos, kind='stable')

        positions[chrom] = pd.Series(all_pos[order], index=[all_names[i] for i in order])
        flags[chrom] = all_flags[order]

    return GeneticMap(positions, flags)


def _fixed_grid(mpos, step, off_end, tol):
    start = mpos[0] - off_end
    end = mpos[-1] + off_end
    n = int(np.floor((end - start) / step + 1e-10)) + 1
    grid = start + step * np.arange(n)
    dist = np.min(np.abs(grid[:, None] - mpos[None, :]), axis=1)
    return grid[dist > tol]


def _max_grid(mpos, step, off_end):
    pts = []
    for left, right in zip(mpos[:-1], mpos[1:]):
        n_ins = int(np.ceil((right - left) / step - 1e-10)) - 1
        if n_ins > 0:
            pts.extend(left + (right - left) * np.arange(1, n_ins + 1) / (n_ins + 1))
    if off_end > 0:
        n_end = int(np.ceil(off_end / step - 1e-10))
        ext = off_end * np.arange(1, n_end + 1) / n_end
        pts.extend(mpos[0] - ext)
        pts.extend(mpos[-1] + ext)
    return np.sort(np.array(pts, dtype=float))


# ============================================================
# Interpolation et utilitaires
# ============================================================

def interp_map(gmap, oldmap, newmap):
    """
    Convertit les positions de gmap (exprimées dans l'échelle de oldmap)
    vers l'échelle de newmap, par interpolation linéaire entre marqueurs
    communs. Au-delà des marqueurs terminaux, extrapolation linéaire.

    Exemple : carte avec pseudo-marqueurs en cM → positions en Mbp.
    """
    positions, flags = {}, {}
    for chrom, s in gmap.items():
        if chrom not in oldmap or chrom not in newmap:
            raise ValueError(f"Chr {chrom} absent de oldmap ou newmap")
        old = oldmap[chrom]
        new = newmap[chrom]
        common = [m for m in old.index if m in new.index]
        if not common:
            raise ValueError(f"Chr {chrom}: aucun marqueur commun entre oldmap et newmap")
        x = old[common].values
        y = new[common].values
        pos = s.values
        if len(common) == 1:
            out = y[0] + (pos - x[0])
        else:
            out = np.interp(pos, x, y)
            slope_l = (y[1] - y[0]) / (x[1] - x[0])
            slope_r = (y[-1] - y[-2]) / (x[-1] - x[-2])
            left = pos < x[0]
            right = pos > x[-1]
            out[left] = y[0] + (pos[left] - x[0]) * slope_l
            out[right] = y[-1] + (pos[right] - x[-1]) * slope_r
        positions[chrom] = pd.Series(out, index=s.index)
        flags[chrom] = gmap.is_pseudo(chrom)
    return GeneticMap(positions, flags)


def jitter_positions(values, amount=1e-6):
    """Décale les positions ex-aequo pour obtenir une suite strictement croissante."""
    out = np.array(values, dtype=float)
    for i in range(1, len(out)):
        if out[i] <= out[i - 1]:
            out[i] = out[i - 1] + amount
    return out


def jitter_map(positions, amount=1e-6):
    """
    Parameters
    ----------
    positions : dict {chr: pd.Series} (positions triées) ou GeneticMap

    Returns
    -------
    dict {chr: pd.Series}, nombre de positions décalées
    """
    out, n_moved = {}, 0
    for chrom, s in positions.items():
        s = pd.Series(s, dtype=float)
        jittered = jitter_positions(s.values, amount)
        n_moved += int(np.sum(jittered != s.values))
        out[chrom] = pd.Series(jittered, index=s.index)
    return out, n_moved


def map_list_to_df(gmap, chr_column='chr', pos_column='pos', marker_column='marker'):
    """Carte → DataFrame (une ligne par position), indexé par nom de marqueur."""
    frames = []
    for chrom, s in gmap.items():
        frames.append(pd.DataFrame({
            chr_column: chrom,
            pos_column: s.values,
            marker_column: s.index,
        }, index=s.index))
    if not frames:
        return pd.DataFrame(columns=[chr_column, pos_column, marker_column])
    return pd.concat(frames)


def find_index(gmap, chrom, pos):
    """Indice de la position la plus proche de pos sur le chromosome."""
    vals = gmap.values(chrom)
    if len(vals) == 0:
        raise ValueError(f"Chr {chrom}: carte vide")
    return int(np.argmin(np.abs(vals - pos)))


def find_marker(gmap, chrom, pos):
    """Nom de la position la plus proche de pos sur le chromosome."""
    return gmap.names(chrom)[find_index(gmap, chrom, pos)]
