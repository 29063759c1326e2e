#!/usr/bin/env python3
"""
qtlmap — Cartographie de QTL dans les croisements expérimentaux
===============================================================

Probabilités de génotype (HMM), scan génomique Haley-Knott ou modèle mixte
(LOCO), seuils par permutation, pics et intervalles de support, effets QTL
et association SNP dans les populations multiparentales.

Usage:
    qtlmap --csv sug.csv --genotypes CC CB BB D C --alleles C B --crosstype bc
    qtlmap --cross2 arabmagic.zip --kinship loco --n-perm 1000 --cores 0
"""

import argparse
import os
import time

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from qtlmap.config import DEFAULT_ERROR_PROB, DEFAULT_MINPROB, DEFAULT_STEP, ConfigurationError
from qtlmap.data_parser import DEFAULT_GENOTYPES, read_csv, read_cross2, write_peaks, write_scan1
from qtlmap.genoprob import calc_genoprob, maxmarg
from qtlmap.kinship import calc_kinship
from qtlmap.lod_engine import scan1, scan1coef
from qtlmap.maps import chr_sort_key, insert_pseudomarkers, interp_map
from qtlmap.peaks import SORT_MODES, find_peaks
from qtlmap.permutation import scan1perm, summary_scan1perm
from qtlmap.snp_scan import scan1snps, snpinfo_from_cross
from qtlmap.visualizations import (
    plot_coef, plot_genoprob, plot_onegeno, plot_peaks, plot_pxg, plot_scan1,
    plot_snpasso, save_figure,
)


def build_parser():
    parser = argparse.ArgumentParser(
        description='qtlmap — Cartographie de QTL',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exemples:
  # Rétrocroisement au format csv R/qtl, 1000 permutations
  qtlmap --csv sug.csv --genotypes CC CB BB D C --alleles C B --crosstype bc --n-perm 1000

  # Population MAGIC au format R/qtl2, modèle mixte LOCO, tous les CPU
  qtlmap --cross2 arabmagic.zip --kinship loco --cores 0

  # Seuil fixe, pics multiples par chromosome
  qtlmap --csv sug.csv --threshold 3 --peakdrop 1.8 --drop 1.5
        """
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument('--csv', help='Croisement au format csv de R/qtl (chemin ou URL)')
    source.add_argument('--cross2',
                        help='Jeu R/qtl2 : répertoire, .zip ou fichier de contrôle (chemin ou URL)')

    parser.add_argument('--genotypes', nargs='+', default=list(DEFAULT_GENOTYPES),
                        help='Symboles AA AB BB non-BB non-AA (csv) [défaut: AA AB BB D C]')
    parser.add_argument('--alleles', nargs='+', default=['A', 'B'],
                        help='Lettres des allèles (csv) [défaut: A B]')
    parser.add_argument('--crosstype', default='f2',
                        help='Type de croisement (csv) : bc, f2, dh, riself, risib... [défaut: f2]')
    parser.add_argument('--step', type=float, default=DEFAULT_STEP,
                        help='Pas des pseudo-marqueurs en cM (0 = aucun) [défaut: 1]')
    parser.add_argument('--error-prob', type=float, default=DEFAULT_ERROR_PROB,
                        help='Probabilité d\'erreur de génotypage [défaut: 1e-4]')
    parser.add_argument('--pheno', nargs='+', default=None,
                        help='Phénotypes à analyser [défaut: tous]')
    parser.add_argument('--covar', nargs='+', default=None,
                        help='Covariables additives (colonnes de covar) [défaut: aucune]')
    parser.add_argument('--kinship', choices=['none', 'overall', 'loco'], default='none',
                        help='Modèle : Haley-Knott (none), mixte (overall) ou LOCO [défaut: none]')
    parser.add_argument('--n-perm', type=int, default=0,
                        help='Nombre de permutations (0 = seuil fixe --threshold) [défaut: 0]')
    parser.add_argument('--alpha', type=float, default=0.05,
                        help='Niveau de significativité des permutations [défaut: 0.05]')
    parser.add_argument('--seed', type=int, default=None,
                        help='Graine des permutations')
    parser.add_argument('--threshold', type=float, default=3.0,
                        help='Seuil LOD sans permutations [défaut: 3.0]')
    parser.add_argument('--peakdrop', type=float, default=np.inf,
                        help='Baisse de LOD entre deux pics d\'un chromosome [défaut: inf]')
    parser.add_argument('--drop', type=float, default=1.5,
                        help='Intervalle de support LOD-drop, <= --peakdrop [défaut: 1.5]')
    parser.add_argument('--sort-by', choices=list(SORT_MODES), default='lodindex',
                        help='Tri des pics [défaut: lodindex]')
    parser.add_argument('--minprob', type=float, default=DEFAULT_MINPROB,
                        help='Probabilité minimale pour appeler un génotype [défaut: 0.95]')
    parser.add_argument('--cores', type=int, default=1,
                        help='Nombre de threads (0 = tous les CPU) [défaut: 1]')
    parser.add_argument('--output', default='results',
                        help='Dossier de sortie [défaut: results]')
    parser.add_argument('--no-viz', action='store_true',
                        help='Désactiver les figures')
    return parser


def _banner(title):
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def load_cross(args):
    if args.csv is not None:
        return read_csv(args.csv, genotypes=args.genotypes, alleles=args.alleles,
                        crosstype=args.crosstype, quiet=False)
    return read_cross2(args.cross2, quiet=False)


def run(args):
    if not 0 <= args.drop <= args.peakdrop:
        raise ConfigurationError(
            f"--drop doit être dans [0, --peakdrop={args.peakdrop}], reçu: {args.drop}"
        )
    t_start = time.time()
    output_dir = args.output
    os.makedirs(output_dir, exist_ok=True)
    viz = not args.no_viz

    # ================================================================
    # 1. Données
    # ================================================================
    _banner("CHARGEMENT DES DONNÉES")
    cross = load_cross(args)
    print()
    cross.summary()

    pheno = cross.pheno
    if args.pheno is not None:
        unknown = [p for p in args.pheno if p not in pheno.columns]
        if unknown:
            raise ConfigurationError(f"Phénotypes inconnus: {unknown}")
        pheno = pheno[args.pheno]
    if pheno.shape[1] == 0:
        raise ConfigurationError("Le croisement ne contient aucun phénotype")

    addcovar = None
    if args.covar is not None:
        if cross.covar is None:
            raise ConfigurationError("Le croisement n'a pas de covariables")
        addcovar = cross.covar[args.covar]

    # ================================================================
    # 2. Probabilités de génotype
    # ================================================================
    _banner("PROBABILITÉS DE GÉNOTYPE")
    gmap = insert_pseudomarkers(cross.gmap, step=args.step) if args.step > 0 else cross.gmap
    print(f"  Positions: {gmap.tot_pos} ({gmap.n_pseudo} pseudo-marqueurs, pas {args.step} cM)")
    pr = calc_genoprob(cross, gmap, error_prob=args.error_prob, cores=args.cores, quiet=False)

    # carte de report : physique si disponible
    if cross.pmap is not None:
        report_map = interp_map(gmap, cross.gmap, cross.pmap)
        unit = 'Mbp'
    else:
        report_map = gmap
        unit = 'cM'

    # ================================================================
    # 3. Scan génomique
    # ================================================================
    _banner("SCAN GÉNOMIQUE")
    kinship = None
    if args.kinship != 'none':
        kinship = calc_kinship(pr, type=args.kinship, cores=args.cores, quiet=False)
    out = scan1(pr, pheno, kinship=kinship, addcovar=addcovar, cores=args.cores, quiet=False)
    for col in out.columns:
        print(f"    {col}: LOD max = {np.nanmax(out[col].values):.2f}")
    write_scan1(out, report_map, os.path.join(output_dir, 'lod_scores_all.tsv'))

    # ================================================================
    # 4. Seuils
    # ================================================================
    if args.n_perm > 0:
        _banner("PERMUTATIONS")
        operm = scan1perm(pr, pheno, kinship=kinship, addcovar=addcovar, n_perm=args.n_perm,
                          cores=args.cores, seed=args.seed, quiet=False)
        thresholds = summary_scan1perm(operm, alpha=args.alpha)
        filepath = os.path.join(output_dir, 'permutation_thresholds.tsv')
        thresholds.to_csv(filepath, sep='\t', float_format='%.4f')
        print(f"  → {filepath}")
        for col in thresholds.columns:
            print(f"    {col}: seuil (alpha={args.alpha}) = {thresholds[col].iloc[0]:.2f}")
        threshold = thresholds
    else:
        threshold = args.threshold

    # ================================================================
    # 5. Pics
    # ================================================================
    _banner("PICS")
    peaks = find_peaks(out, report_map, threshold=threshold, peakdrop=args.peakdrop,
                       drop=args.drop, sort_by=args.sort_by)
    write_peaks(peaks, os.path.join(output_dir, 'peaks.tsv'))
    if peaks.empty:
        print("  Aucun pic au-dessus du seuil.")
    for row in peaks.itertuples(index=False):
        ci = f" [{row.ci_lo:.2f}-{row.ci_hi:.2f}]"
        print(f"    ★ {row.lodcolumn} chr {row.chr} @ {row.pos:.2f} {unit}{ci} LOD={row.lod:.2f}")

    # ================================================================
    # 6. Effets au pic principal
    # ================================================================
    figures = {}
    top = peaks.sort_values('lod', ascending=False).iloc[0] if not peaks.empty else None
    if top is not None:
        _banner("EFFETS QTL")
        chrom = str(top['chr'])
        y = pheno[top['lodcolumn']]
        coef = scan1coef(pr.subset(chr=chrom), y, kinship=kinship, addcovar=addcovar, se=True)
        filepath = os.path.join(output_dir, f"effects_{top['lodcolumn']}_chr{chrom}.tsv")
        coef.to_csv(filepath, sep='\t', float_format='%.4f')
        print(f"  → {filepath}")
        g = maxmarg(pr, report_map, minprob=args.minprob, chr=chrom, pos=top['pos'],
                    return_char=True)
        print(f"    Génotypes appelés au pic: {int(g.notna().sum())}/{len(g)} "
              f"(minprob={args.minprob})")
        if viz:
            figures['coef'] = plot_coef(coef, report_map, chr=chrom)
            figures['pxg'] = plot_pxg(g, y, SEmult=2, xlab=str(top['lodcolumn']))

    # ================================================================
    # 7. Association SNP (populations multiparentales)
    # ================================================================
    if cross.crosstype.is_multiparent and cross.has_founder_geno:
        _banner("ASSOCIATION SNP")
        snpinfo = snpinfo_from_cross(cross)
        print(f"  {len(snpinfo)} SNP informatifs")
        snp_chr = [str(top['chr'])] if top is not None else cross.chr_names
        snpinfo = snpinfo[snpinfo['chr'].isin(snp_chr)]
        if len(snpinfo):
            snp_pheno = pheno[[top['lodcolumn']]] if top is not None else pheno.iloc[:, [0]]
            snp_kin = kinship
            if isinstance(kinship, dict):
                snp_kin = {c: kinship[c] for c in snp_chr}
            res = scan1snps(pr.subset(chr=snp_chr), report_map.subset(snp_chr),
                            snp_pheno, snpinfo, kinship=snp_kin,
                            addcovar=addcovar, cores=args.cores, quiet=False)
            filepath = os.path.join(output_dir, 'snp_scan.tsv')
            table = res['snpinfo'].merge(res['lod'].reset_index(),
                                         left_on=['chr', 'snp_id'], right_on=['chr', 'marker'])
            table.drop(columns='marker').to_csv(filepath, sep='\t', index=False,
                                                float_format='%.4f')
            print(f"  → {filepath}")
            if viz:
                figures['snpasso'] = plot_snpasso(res['lod'], res['snpinfo'])

    # ================================================================
    # 8. Visualisations
    # ================================================================
    if viz:
        _banner("VISUALISATIONS")
        for col in out.columns:
            thr = threshold[col].iloc[0] if isinstance(threshold, pd.DataFrame) else threshold
            ax = plot_scan1(out, report_map, lodcolumn=col, threshold=thr)
            save_figure(ax, os.path.join(output_dir, f'scan1_{col}.png'))
        if not peaks.empty:
            save_figure(plot_peaks(peaks, report_map), os.path.join(output_dir, 'peaks.png'))
        first_chr = sorted(pr.chromosomes, key=chr_sort_key)[0]
        save_figure(plot_genoprob(pr, report_map, ind=0, chr=first_chr),
                    os.path.join(output_dir, 'genoprob_ind1.png'))
        calls = maxmarg(pr, minprob=args.minprob, cores=args.cores)
        save_figure(plot_onegeno(calls, report_map, ind=0, labels=pr.genotypes(first_chr)),
                    os.path.join(output_dir, 'onegeno_ind1.png'))
        for name, ax in figures.items():
            save_figure(ax, os.path.join(output_dir, f'{name}.png'))
        plt.close('all')

    # ================================================================
    # 9. Résumé
    # ================================================================
    t_elapsed = time.time() - t_start
    _banner("RÉSUMÉ")
    print(f"  Temps total: {t_elapsed:.1f} secondes")
    print(f"  Individus: {cross.n_ind}, positions: {gmap.tot_pos}, phénotypes: {pheno.shape[1]}")
    print(f"  Pics: {len(peaks)}")
    print(f"  Résultats dans: {os.path.abspath(output_dir)}/")
    print("\nTerminé ✓")
    return {'scan1': out, 'peaks': peaks}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        run(args)
    except ConfigurationError as exc:
        parser.error(str(exc))
    return 0


if __name__ == '__main__':
    main()
