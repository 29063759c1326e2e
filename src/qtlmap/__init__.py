"""
qtlmap — Pipeline de cartographie de QTL
========================================

Cartographie de QTL dans les croisements expérimentaux (backcross,
intercross, lignées recombinantes, populations MAGIC) : probabilités de
génotype par HMM, scans Haley-Knott et modèle mixte, permutations,
pics et intervalles de support, effets QTL et association SNP.

Modules:
    config: Codes génotype, types de croisement, validation des paramètres
    maps: Cartes génétiques, pseudo-marqueurs, interpolation
    cross: Structure de données d'un croisement
    data_parser: Lecture des formats csv R/qtl et R/qtl2, écriture des résultats
    genoprob: Probabilités de génotype (forward-backward), maxmarg
    kinship: Matrices d'apparentement (globale, LOCO)
    lod_engine: Scan génomique (Haley-Knott, LMM) et effets QTL
    permutation: Seuils de significativité par permutation
    peaks: Pics de LOD et intervalles de support
    snp_scan: Association SNP dans les populations multiparentales
    visualizations: Figures matplotlib
"""

__version__ = "1.0.0"

from .config import ConfigurationError, CrossType
from .maps import GeneticMap, insert_pseudomarkers, interp_map
from .cross import Cross
from .data_parser import read_csv, read_cross2, write_peaks, write_scan1
from .genoprob import GenoProb, calc_genoprob, genoprob_to_alleleprob, maxmarg, pull_genoprobpos
from .kinship import calc_kinship
from .lod_engine import estimate_herit, scan1, scan1coef
from .permutation import scan1perm, summary_scan1perm
from .peaks import find_peaks, lod_int, max_scan1
from .snp_scan import calc_sdp, genoprob_to_snpprob, index_snps, scan1snps

__all__ = [
    "ConfigurationError",
    "CrossType",
    "GeneticMap",
    "insert_pseudomarkers",
    "interp_map",
    "Cross",
    "read_csv",
    "read_cross2",
    "write_peaks",
    "write_scan1",
    "GenoProb",
    "calc_genoprob",
    "genoprob_to_alleleprob",
    "maxmarg",
    "pull_genoprobpos",
    "calc_kinship",
    "estimate_herit",
    "scan1",
    "scan1coef",
    "scan1perm",
    "summary_scan1perm",
    "find_peaks",
    "lod_int",
    "max_scan1",
    "calc_sdp",
    "genoprob_to_snpprob",
    "index_snps",
    "scan1snps",
]
