"""
Structure de données d'un croisement expérimental : génotypes aux marqueurs,
cartes génétique et physique, phénotypes, génotypes des fondateurs.
"""

import numpy as np
import pandas as pd

from .config import GENO_MISSING, N_GENO_CODES, get_crosstype
from .maps import GeneticMap


def _numeric(df):
    """Conversion numérique colonne par colonne, valeurs non numériques → NaN."""
    if df.shape[1] == 0:
        return df.astype(float)
    return df.apply(pd.to_numeric, errors="coerce")


def _readonly(arr):
    arr = np.array(arr, copy=True)
    arr.flags.writeable = False
    return arr


class Cross:
    """
    Jeu de données d'un croisement, immuable après construction.

    Les génotypes sont stockés par chromosome sous forme de matrices
    (individus × marqueurs) d'entiers codés selon config.GENO_*.
    """

    def __init__(self, geno, gmap, pheno=None, crosstype='f2', pmap=None,
                 covar=None, founder_geno=None, alleles=None):
        """
        Parameters
        ----------
        geno : dict {chr: DataFrame}
            Lignes = individus, colonnes = marqueurs, valeurs = codes génotype
        gmap : GeneticMap ou dict {chr: pd.Series}
            Carte génétique (cM)
        pheno : DataFrame, optional
            Lignes = individus, colonnes = phénotypes
        crosstype : str ou CrossType
        pmap : GeneticMap ou dict, optional
            Carte physique (Mbp)
        covar : DataFrame, optional
            Covariables par individu
        founder_geno : dict {chr: DataFrame}, optional
            Lignes = fondateurs, colonnes = marqueurs (codes 1/3, 0 = manquant)
        alleles : sequence of str, optional
            Lettres des allèles fondateurs
        """
        self.crosstype = get_crosstype(crosstype)
        self.gmap = gmap if isinstance(gmap, GeneticMap) else GeneticMap(gmap)
        if pmap is not None and not isinstance(pmap, GeneticMap):
            pmap = GeneticMap(pmap)
        self.pmap = pmap
        self.alleles = tuple(alleles) if alleles is not None else \
            self.crosstype.allele_names()

        # --- Génotypes ------------------------------------------------
        geno = {str(c): g for c, g in geno.items()}
        self._geno = {}
        self.n_invalid_calls = 0
        ind_ids = None
        for chrom in self.gmap:
            if chrom not in geno:
                raise ValueError(f"Chr {chrom} présent dans la carte mais absent des génotypes")
            gdf = pd.DataFrame(geno[chrom])
            gdf.index = gdf.index.astype(str)
            gdf.columns = gdf.columns.astype(str)

            markers = self.gmap.names(chrom)
            unknown = set(gdf.columns) - set(markers)
            if unknown:
                raise ValueError(
                    f"Chr {chrom}: marqueurs génotypés absents de la carte: {sorted(unknown)[:5]}"
                )
            absent = set(markers) - set(gdf.columns)
            if absent:
                raise ValueError(
                    f"Chr {chrom}: marqueurs de la carte sans génotypes: {sorted(absent)[:5]}"
                )

            if ind_ids is None:
                ind_ids = list(gdf.index)
                if len(set(ind_ids)) != len(ind_ids):
                    raise ValueError("Identifiants d'individus dupliqués")
            elif set(gdf.index) != set(ind_ids):
                raise ValueError(f"Chr {chrom}: individus différents des autres chromosomes")

            mat = _numeric(gdf.loc[ind_ids, markers]).values
            invalid = ~np.isin(mat, np.arange(N_GENO_CODES))
            self.n_invalid_calls += int(np.sum(invalid & ~np.isnan(mat)))
            mat = np.where(invalid, GENO_MISSING, mat).astype(np.int8)
            self._geno[chrom] = _readonly(mat)

        for chrom in geno:
            if str(chrom) not in self._geno:
                raise ValueError(f"Chr {chrom} génotypé mais absent de la carte")

        self.ind_ids = list(ind_ids) if ind_ids is not None else []

        # --- Phénotypes -----------------------------------------------
        if pheno is None:
            pheno = pd.DataFrame(index=self.ind_ids)
        pheno = pd.DataFrame(pheno).copy()
        pheno.index = pheno.index.astype(str)
        extra = set(pheno.index) - set(self.ind_ids)
        if extra:
            raise ValueError(f"Phénotypes pour des individus non génotypés: {sorted(extra)[:5]}")
        pheno = _numeric(pheno.reindex(self.ind_ids))
        self._pheno = pheno.astype(float)

        if covar is not None:
            covar = pd.DataFrame(covar).copy()
            covar.index = covar.index.astype(str)
            covar = covar.reindex(self.ind_ids)
        self._covar = covar

        # --- Génotypes fondateurs -------------------------------------
        self._founder_geno = None
        if founder_geno is not None:
            self._founder_geno = {}
            founder_geno = {str(c): g for c, g in founder_geno.items()}
            for chrom in self.gmap:
                if chrom not in founder_geno:
                    raise ValueError(f"Chr {chrom}: génotypes fondateurs manquants")
                fdf = pd.DataFrame(founder_geno[chrom])
                fdf.columns = fdf.columns.astype(str)
                markers = self.gmap.names(chrom)
                fdf = fdf.reindex(columns=markers)
                fmat = _numeric(fdf).fillna(GENO_MISSING).values
                if fmat.shape[0] != self.crosstype.n_founders:
                    raise ValueError(
                        f"Chr {chrom}: {fmat.shape[0]} fondateurs, "
                        f"{self.crosstype.n_founders} attendus pour {self.crosstype.name}"
                    )
                self._founder_geno[chrom] = _readonly(fmat.astype(np.int8))
        elif self.crosstype.needs_founder_geno:
            raise ValueError(f"Génotypes fondateurs requis pour le croisement {self.crosstype.name}")

    def __repr__(self):
        return (f"Cross({self.crosstype.name}, {self.n_ind} individus, "
                f"{self.tot_mar} marqueurs, {self.n_pheno} phénotypes)")

    # ------------------------------------------------------------------
    # Accès
    # ------------------------------------------------------------------
    @property
    def pheno(self):
        return self._pheno.copy()

    @property
    def covar(self):
        return None if self._covar is None else self._covar.copy()

    def geno(self, chrom):
        """Matrice des génotypes (individus × marqueurs), en lecture seule."""
        return self._geno[str(chrom)]

    def geno_frame(self, chrom):
        chrom = str(chrom)
        return pd.DataFrame(self._geno[chrom], index=self.ind_ids,
                            columns=self.gmap.names(chrom))

    def founder_geno(self, chrom):
        if self._founder_geno is None:
            return None
        return self._founder_geno[str(chrom)]

    @property
    def has_founder_geno(self):
        return self._founder_geno is not None

    def genotype_names(self):
        return self.crosstype.genotype_names(self.alleles)

    # ------------------------------------------------------------------
    # Résumés
    # ------------------------------------------------------------------
    @property
    def n_ind(self):
        return len(self.ind_ids)

    @property
    def chr_names(self):
        return self.gmap.chromosomes

    @property
    def n_chr(self):
        return len(self.gmap)

    @property
    def n_mar(self):
        """Nombre de marqueurs par chromosome."""
        return pd.Series({c: self._geno[c].shape[1] for c in self.chr_names}, dtype=int)

    @property
    def tot_mar(self):
        return int(self.n_mar.sum())

    @property
    def pheno_names(self):
        return list(self._pheno.columns)

    @property
    def n_pheno(self):
        return self._pheno.shape[1]

    @property
    def n_founders(self):
        return self.crosstype.n_founders

    def percent_missing(self):
        """Pourcentage de génotypes manquants par individu."""
        total = sum(g.shape[1] for g in self._geno.values())
        if total == 0:
            return pd.Series(0.0, index=self.ind_ids)
        n_miss = sum((g == GENO_MISSING).sum(axis=1) for g in self._geno.values())
        return pd.Series(100.0 * n_miss / total, index=self.ind_ids)

    def summary(self):
        """Affiche un résumé du croisement."""
        print(f"Croisement: {self.crosstype.name} ({self.n_founders} fondateurs: "
              f"{', '.join(self.alleles)})")
        print(f"  Individus: {self.n_ind}")
        print(f"  Phénotypes: {self.n_pheno} ({', '.join(self.pheno_names[:8])}"
              f"{', ...' if self.n_pheno > 8 else ''})")
        print(f"  Chromosomes: {self.n_chr}")
        print(f"  Marqueurs: {self.tot_mar}")
        for chrom in self.chr_names:
            print(f"    Chr {chrom}: {self.n_mar[chrom]} marqueurs, "
                  f"{self.gmap.span(chrom):.1f} cM")
        if self.n_ind > 0:
            print(f"  Génotypes manquants: {self.percent_missing().mean():.1f}%")
        if self.n_invalid_calls:
            print(f"  Appels invalides traités comme manquants: {self.n_invalid_calls}")
        if self._covar is not None:
            print(f"  Covariables: {', '.join(map(str, self._covar.columns))}")

    # ------------------------------------------------------------------
    def subset(self, chr=None, ind=None):
        """
        Sous-ensemble du croisement.

        Parameters
        ----------
        chr : str ou list, optional
        ind : list d'identifiants, optional
        """
        chroms = self.chr_names if chr is None else [str(c) for c in np.atleast_1d(chr)]
        inds = self.ind_ids if ind is None else [str(i) for i in ind]
        unknown = set(inds) - set(self.ind_ids)
        if unknown:
            raise KeyError(f"Individus inconnus: {sorted(unknown)[:5]}")
        idx = [self.ind_ids.index(i) for i in inds]

        geno = {c: pd.DataFrame(self._geno[c][idx], index=inds,
                                columns=self.gmap.names(c)) for c in chroms}
        founder = None
        if self._founder_geno is not None:
            founder = {c: pd.DataFrame(self._founder_geno[c], columns=self.gmap.names(c))
                       for c in chroms}
        pmap = None
        if self.pmap is not None:
            pmap = self.pmap.subset([c for c in chroms if c in self.pmap])
        return Cross(
            geno, self.gmap.subset(chroms), pheno=self._pheno.loc[inds],
            crosstype=self.crosstype, pmap=pmap,
            covar=None if self._covar is None else self._covar.loc[inds],
            founder_geno=founder, alleles=self.alleles,
        )
