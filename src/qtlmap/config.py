"""
Configuration des types de croisement pour le calcul des probabilités de génotype.
"""

import re
import string

import numpy as np

# ============================================================
# Encodage des génotypes observés (conventions R/qtl)
#   0: manquant
#   1: AA    2: AB    3: BB
#   4: non-BB (AA ou AB)    5: non-AA (AB ou BB)
# Les génotypes fondateurs n'utilisent que 0, 1 et 3.
# ============================================================

GENO_MISSING = 0
GENO_AA = 1
GENO_AB = 2
GENO_BB = 3
GENO_NOT_BB = 4
GENO_NOT_AA = 5
N_GENO_CODES = 6

# Valeurs par défaut
DEFAULT_ERROR_PROB = 1e-4
DEFAULT_STEP = 1.0
DEFAULT_MINPROB = 0.95
DEFAULT_ALLELES = ('A', 'B')

# Lettres attribuées aux fondateurs des populations multiparentales
FOUNDER_LETTERS = string.ascii_uppercase


class ConfigurationError(ValueError):
    """Paramètre invalide détecté avant tout calcul."""


def validate_error_prob(error_prob):
    if error_prob is None or not np.isfinite(error_prob) or not 0.0 <= error_prob < 1.0:
        raise ConfigurationError(
            f"error_prob doit être dans [0, 1), reçu: {error_prob}"
        )
    return float(error_prob)


def validate_minprob(minprob):
    if minprob is None or not 0.0 < minprob <= 1.0:
        raise ConfigurationError(f"minprob doit être dans (0, 1], reçu: {minprob}")
    return float(minprob)


def validate_alpha(alpha):
    arr = np.atleast_1d(np.asarray(alpha, dtype=float))
    if arr.size == 0 or np.any(~(arr > 0.0)) or np.any(~(arr < 1.0)):
        raise ConfigurationError(f"alpha doit être dans (0, 1), reçu: {alpha}")
    return arr


# ============================================================
# Types de croisement
# ============================================================

_BIPARENTAL = {
    # nom: paires de fondateurs portées par chaque état
    'bc': [(0, 0), (0, 1)],
    'f2': [(0, 0), (0, 1), (1, 1)],
    'dh': [(0, 0), (1, 1)],
    'riself': [(0, 0), (1, 1)],
    'risib': [(0, 0), (1, 1)],
}

_MULTIPARENT_RE = re.compile(r'^(riself|risib|magic)(\d+)$')


class CrossType:
    """Modèle HMM spécifique à un type de croisement."""

    def __init__(self, name='f2'):
        """
        Parameters
        ----------
        name : str
            'bc', 'f2', 'dh', 'riself', 'risib', ou une population
            multiparentale homozygote 'riself{k}', 'risib{k}', 'magic{k}'
            (k fondateurs, ex. 'magic19').
        """
        name = str(name).lower()
        m = _MULTIPARENT_RE.match(name)
        if name in _BIPARENTAL:
            self.name = name
            self.mating = 'sib' if name == 'risib' else 'self'
            self.n_founders = 2
            self.founder_pairs = list(_BIPARENTAL[name])
            self.is_multiparent = False
        elif m is not None:
            k = int(m.group(2))
            if k < 2 or k > len(FOUNDER_LETTERS):
                raise ConfigurationError(f"Nombre de fondateurs invalide: {name}")
            self.name = name
            self.mating = 'sib' if m.group(1) == 'risib' else 'self'
            self.n_founders = k
            self.founder_pairs = [(f, f) for f in range(k)]
            self.is_multiparent = True
        else:
            raise ConfigurationError(f"Type de croisement inconnu: {name}")

        self.n_gen = len(self.founder_pairs)
        self.homozygous = all(a == b for a, b in self.founder_pairs)

        if self.name == 'f2':
            self.init = np.array([0.25, 0.5, 0.25])
        else:
            self.init = np.full(self.n_gen, 1.0 / self.n_gen)

        # Dosage allélique de chaque état (n_gen, n_founders)
        dosage = np.zeros((self.n_gen, self.n_founders))
        for g, (a, b) in enumerate(self.founder_pairs):
            dosage[g, a] += 0.5
            dosage[g, b] += 0.5
        self.allele_dosage = dosage

    def __repr__(self):
        return f"CrossType({self.name!r})"

    def __eq__(self, other):
        return isinstance(other, CrossType) and other.name == self.name

    def __hash__(self):
        return hash(self.name)

    @property
    def needs_founder_geno(self):
        return self.is_multiparent

    def genotype_names(self, alleles=None):
        """Noms des génotypes, ex. ('CC', 'CB', 'BB') pour alleles=('C', 'B')."""
        if alleles is None or len(alleles) < self.n_founders:
            alleles = DEFAULT_ALLELES if self.n_founders == 2 else FOUNDER_LETTERS
        return tuple(f"{alleles[a]}{alleles[b]}" for a, b in self.founder_pairs)

    def allele_names(self, alleles=None):
        if alleles is None or len(alleles) < self.n_founders:
            alleles = DEFAULT_ALLELES if self.n_founders == 2 else FOUNDER_LETTERS
        return tuple(alleles[:self.n_founders])

    # ------------------------------------------------------------------
    def transition_matrix(self, r):
        """
        Matrice de transition entre deux positions adjacentes.

        trans[g_gauche, g_droite] = P(g_droite | g_gauche)

        Parameters
        ----------
        r : float
            Fraction de recombinaison méiotique entre les deux positions
        """
        if self.name == 'f2':
            s = 1.0 - r
            return np.array([
                [s * s, 2 * r * s, r * r],
                [r * s, s * s + r * r, r * s],
                [r * r, 2 * r * s, s * s],
            ])

        k = self.n_gen
        if self.is_multiparent and k in (4, 8):
            return self._ril_transition(r)

        if self.name in ('bc', 'dh'):
            R = r
        elif self.mating == 'sib':
            R = 4.0 * r / (1.0 + 6.0 * r)
        else:
            R = 2.0 * r / (1.0 + 2.0 * r)

        # approximation symétrique pour les autres nombres de fondateurs
        trans = np.full((k, k), R / (k - 1))
        np.fill_diagonal(trans, 1.0 - R)
        return trans

    def _ril_transition(self, r):
        """
        Transitions d'une RIL à 4 ou 8 fondateurs (Broman 2005).

        Les fondateurs sont croisés par paires (A×B, C×D, ...) : pour 8
        fondateurs, passer au partenaire de la première génération est
        plus probable que passer à une autre paire.
        """
        k = self.n_gen
        if self.mating == 'sib':
            denom = 1.0 + 6.0 * r
            if k == 4:
                stay, switch = 1.0 / denom, 2.0 * r / denom
            else:
                stay, switch = (1.0 - r) / denom, r / denom
            trans = np.full((k, k), switch)
        elif k == 4:
            denom = 1.0 + 2.0 * r
            stay = (1.0 - r) / denom
            trans = np.full((k, k), r / denom)
        else:
            denom = 1.0 + 2.0 * r
            stay = (1.0 - r) ** 2 / denom
            trans = np.full((k, k), r / (2.0 * denom))
            pair = r * (1.0 - r) / denom
            for i in range(0, k, 2):
                trans[i, i + 1] = trans[i + 1, i] = pair
        np.fill_diagonal(trans, stay)
        return trans

    # ------------------------------------------------------------------
    def emission_table(self, error_prob, founder_geno=None):
        """
        Table d'émission pour un marqueur.

        emit[obs_code, g] = P(génotype observé | état g)

        Parameters
        ----------
        error_prob : float
            Probabilité d'erreur de génotypage
        founder_geno : array (n_founders,), optional
            Génotypes des fondateurs au marqueur (obligatoire pour les
            populations multiparentales)

        Returns
        -------
        emit : array (N_GENO_CODES, n_gen)
        """
        eps = error_prob
        emit = np.ones((N_GENO_CODES, self.n_gen))

        if self.is_multiparent:
            if founder_geno is None:
                raise ValueError(f"Génotypes fondateurs requis pour {self.name}")
            fg = np.asarray(founder_geno)
            for obs in (GENO_AA, GENO_BB):
                known = fg != GENO_MISSING
                emit[obs] = np.where(known, np.where(fg == obs, 1.0 - eps, eps), 1.0)
            return emit

        if self.name == 'f2':
            emit[GENO_AA] = [1 - eps, eps / 2, eps / 2]
            emit[GENO_AB] = [eps / 2, 1 - eps, eps / 2]
            emit[GENO_BB] = [eps / 2, eps / 2, 1 - eps]
            emit[GENO_NOT_BB] = [1 - eps / 2, 1 - eps / 2, eps]
            emit[GENO_NOT_AA] = [eps, 1 - eps / 2, 1 - eps / 2]
        elif self.name == 'bc':
            emit[GENO_AA] = [1 - eps, eps]
            emit[GENO_AB] = [eps, 1 - eps]
            emit[GENO_NOT_AA] = [eps, 1 - eps]
        else:
            # lignées homozygotes : AA / BB, hétérozygote non informatif
            emit[GENO_AA] = [1 - eps, eps]
            emit[GENO_BB] = [eps, 1 - eps]
            emit[GENO_NOT_BB] = [1 - eps, eps]
            emit[GENO_NOT_AA] = [eps, 1 - eps]
        return emit


def get_crosstype(crosstype):
    """Retourne une instance CrossType (accepte un nom ou une instance)."""
    if isinstance(crosstype, CrossType):
        return crosstype
    return CrossType(crosstype)
