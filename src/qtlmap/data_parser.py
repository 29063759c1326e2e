"""
Parseur de données pour les croisements expérimentaux.

Deux formats d'entrée :
- le format « csv » de R/qtl (un seul fichier : phénotypes et génotypes,
  lignes 2-3 = chromosome et position des marqueurs)
- le format R/qtl2 : fichier de contrôle YAML/JSON décrivant des CSV séparés
  (génotypes, cartes, phénotypes, covariables, génotypes fondateurs),
  éventuellement dans une archive zip, en local ou par URL.
"""

import json
import os
import tempfile
import urllib.request
import zipfile

import numpy as np
import pandas as pd
import yaml

from .config import GENO_AA, GENO_AB, GENO_BB, GENO_MISSING, GENO_NOT_AA, GENO_NOT_BB
from .cross import Cross
from .maps import chr_sort_key, jitter_map

DEFAULT_GENOTYPES = ('AA', 'AB', 'BB', 'D', 'C')
DEFAULT_NA_STRINGS = ('-', 'NA')
CONTROL_EXTENSIONS = ('.yaml', '.yml', '.json')


def _is_url(path):
    return str(path).lower().startswith(('http://', 'https://', 'ftp://'))


def genotype_codes(genotypes=DEFAULT_GENOTYPES):
    """
    Table symbole → code pour les cinq symboles R/qtl (AA, AB, BB, non-BB, non-AA),
    ou dictionnaire {symbole: code} fourni tel quel.
    """
    if isinstance(genotypes, dict):
        return {str(k): int(v) for k, v in genotypes.items()}
    codes = (GENO_AA, GENO_AB, GENO_BB, GENO_NOT_BB, GENO_NOT_AA)
    return {str(g): c for g, c in zip(genotypes, codes) if g is not None}


def encode_genotypes(frame, codes):
    """Encode une table de symboles en codes entiers ; symboles inconnus → manquant."""
    lookup = {k: v for k, v in codes.items()}
    # valeurs déjà numériques (ex. 1/2/3 lus comme entiers)
    lookup.update({str(v): v for v in codes.values() if str(v) not in lookup})
    encoded = frame.apply(lambda col: col.map(
        lambda x: GENO_MISSING if pd.isna(x) else lookup.get(str(x).strip(), GENO_MISSING)
    ))
    return encoded.astype(np.int8)


# ============================================================
# Format csv de R/qtl
# ============================================================

def read_csv(file, genotypes=DEFAULT_GENOTYPES, alleles=('A', 'B'), crosstype='f2',
             na_strings=DEFAULT_NA_STRINGS, sep=',', quiet=True):
    """
    Lit un croisement au format « csv » de R/qtl.

    Format :
        ligne 1 : noms des colonnes (phénotypes puis marqueurs)
        ligne 2 : chromosome (vide pour les phénotypes)
        ligne 3 : position en cM (vide pour les phénotypes)
        puis une ligne par individu

    Parameters
    ----------
    file : str
        Chemin ou URL
    genotypes : sequence ou dict
        Symboles de AA, AB, BB, non-BB, non-AA (ou dict symbole → code)
    alleles : sequence of str
    crosstype : str
    na_strings : sequence of str

    Returns
    -------
    Cross
    """
    raw = pd.read_csv(file, sep=sep, header=None, dtype=str,
                      na_values=list(na_strings), keep_default_na=False)
    if raw.shape[0] < 3:
        raise ValueError(f"{file}: au moins 3 lignes attendues (noms, chromosomes, positions)")

    names = [str(x).strip() for x in raw.iloc[0]]
    chr_row = raw.iloc[1].fillna('').astype(str).str.strip()
    pos_row = raw.iloc[2].fillna('').astype(str).str.strip()
    body = raw.iloc[3:].reset_index(drop=True)
    body.columns = names

    is_marker = (chr_row != '').values
    if not is_marker.any():
        raise ValueError(f"{file}: aucune colonne de marqueur (ligne 2 vide)")
    pheno_cols = [n for n, m in zip(names, is_marker) if not m]
    marker_cols = [n for n, m in zip(names, is_marker) if m]
    if len(set(marker_cols)) != len(marker_cols):
        raise ValueError(f"{file}: noms de marqueurs dupliqués")

    id_col = next((c for c in pheno_cols if c.lower() == 'id'), None)
    if id_col is not None:
        ids = body[id_col].astype(str).str.strip().values
    else:
        ids = np.arange(1, len(body) + 1).astype(str)
    if len(set(ids)) != len(ids):
        raise ValueError(f"{file}: identifiants d'individus dupliqués")

    pheno = body[[c for c in pheno_cols if c != id_col]].copy()
    pheno.index = ids
    pheno = pheno.apply(pd.to_numeric, errors='coerce')

    try:
        pos = pd.to_numeric(pos_row[is_marker], errors='raise').values.astype(float)
    except ValueError as exc:
        raise ValueError(f"{file}: positions de marqueurs non numériques") from exc

    geno_all = body[marker_cols].copy()
    geno_all.index = ids
    codes = genotype_codes(genotypes)
    geno_all = encode_genotypes(geno_all, codes)

    marker_chr = chr_row[is_marker].values
    positions = {}
    for chrom in sorted(pd.unique(marker_chr), key=chr_sort_key):
        sel = marker_chr == chrom
        s = pd.Series(pos[sel], index=np.array(marker_cols)[sel])
        positions[chrom] = s.sort_values(kind='stable')
    positions, n_moved = jitter_map(positions)

    geno = {c: geno_all[list(s.index)] for c, s in positions.items()}

    if not quiet:
        print(f"Lecture du croisement (csv): {file}")
        print(f"  {len(ids)} individus, {len(pheno.columns)} phénotypes, "
              f"{len(marker_cols)} marqueurs sur {len(positions)} chromosomes")
        if n_moved:
            print(f"  {n_moved} positions identiques décalées (jitter)")

    return Cross(geno, positions, pheno=pheno, crosstype=crosstype, alleles=alleles)


# ============================================================
# Format R/qtl2
# ============================================================

def _download(url, dest_dir):
    filepath = os.path.join(dest_dir, os.path.basename(url.split('?')[0]) or 'download')
    req = urllib.request.Request(url, headers={'User-Agent': 'qtlmap'})
    with urllib.request.urlopen(req, timeout=60) as response, open(filepath, 'wb') as f:
        f.write(response.read())
    return filepath


def _find_control(directory):
    found = []
    for root, _, files in os.walk(directory):
        found.extend(os.path.join(root, f) for f in files
                     if f.lower().endswith(CONTROL_EXTENSIONS) and not f.startswith('.'))
    if len(found) != 1:
        raise ValueError(
            f"{directory}: un seul fichier de contrôle (.yaml/.json) attendu, {len(found)} trouvés"
        )
    return found[0]


def read_control(filepath):
    """Lit le fichier de contrôle R/qtl2 (YAML ou JSON)."""
    with open(filepath) as f:
        if filepath.lower().endswith('.json'):
            control = json.load(f)
        else:
            control = yaml.safe_load(f)
    if not isinstance(control, dict):
        raise ValueError(f"{filepath}: fichier de contrôle invalide")
    return control


def _as_list(value):
    if value is None:
        return []
    return list(value) if isinstance(value, (list, tuple)) else [value]


def _read_table(directory, files, control, transposed=False):
    """Lit un ou plusieurs CSV R/qtl2 (première colonne = identifiants)."""
    frames = []
    for name in _as_list(files):
        df = pd.read_csv(
            os.path.join(directory, name),
            sep=control.get('sep', ','),
            comment=control.get('comment.char', '#'),
            na_values=_as_list(control.get('na.strings', list(DEFAULT_NA_STRINGS))),
            keep_default_na=False, dtype=str,
        )
        df = df.set_index(df.columns[0])
        if transposed:
            df = df.T
        df.index = df.index.astype(str).str.strip()
        df.columns = df.columns.astype(str).str.strip()
        frames.append(df)
    if not frames:
        return None
    return pd.concat(frames, axis=1) if len(frames) > 1 else frames[0]


def _read_map(directory, files, control):
    df = _read_table(directory, files, control)
    if df is None:
        return None
    if df.shape[1] < 2:
        raise ValueError(f"Carte {files}: colonnes marker, chr, pos attendues")
    chroms = df.iloc[:, 0].astype(str).str.strip()
    pos = pd.to_numeric(df.iloc[:, 1], errors='coerce')
    if pos.isna().any():
        raise ValueError(f"Carte {files}: positions manquantes ou non numériques")
    positions = {}
    for chrom in sorted(pd.unique(chroms), key=chr_sort_key):
        sel = (chroms == chrom).values
        positions[chrom] = pd.Series(pos.values[sel], index=df.index[sel]).sort_values(kind='stable')
    return positions


def _maybe_numeric(col):
    """Colonne numérique si toutes les valeurs présentes le sont, sinon inchangée."""
    num = pd.to_numeric(col, errors='coerce')
    return num if num.notna().sum() == col.notna().sum() else col


def _split_by_chr(table, positions):
    return {c: table.reindex(columns=list(s.index)) for c, s in positions.items()}


def read_cross2(file, quiet=True):
    """
    Lit un jeu de données R/qtl2.

    Parameters
    ----------
    file : str
        Répertoire, archive .zip (locale ou URL) ou fichier de contrôle
        (.yaml, .yml, .json)

    Returns
    -------
    Cross
    """
    with tempfile.TemporaryDirectory() as tmp:
        path = str(file)
        if _is_url(path):
            if not quiet:
                print(f"Téléchargement: {path}")
            path = _download(path, tmp)
        if path.lower().endswith('.zip'):
            with zipfile.ZipFile(path) as zf:
                zf.extractall(os.path.join(tmp, 'unzipped'))
            path = _find_control(os.path.join(tmp, 'unzipped'))
        elif os.path.isdir(path):
            path = _find_control(path)
        return _read_cross2_control(path, quiet)


def _read_cross2_control(control_file, quiet):
    control = read_control(control_file)
    directory = os.path.dirname(control_file)
    crosstype = control.get('crosstype')
    if crosstype is None:
        raise ValueError(f"{control_file}: champ 'crosstype' manquant")
    if 'geno' not in control or 'gmap' not in control:
        raise ValueError(f"{control_file}: champs 'geno' et 'gmap' obligatoires")

    codes = genotype_codes(control.get('genotypes', {'A': GENO_AA, 'H': GENO_AB, 'B': GENO_BB}))

    gmap = _read_map(directory, control['gmap'], control)
    gmap, n_moved = jitter_map(gmap)
    pmap = _read_map(directory, control.get('pmap'), control)
    if pmap is not None:
        # mêmes marqueurs que la carte génétique
        pmap = {c: s[s.index.isin(gmap[c].index)] for c, s in pmap.items() if c in gmap}
        pmap, _ = jitter_map(pmap)

    geno = _read_table(directory, control['geno'], control,
                       transposed=bool(control.get('geno_transposed', False)))
    geno = encode_genotypes(geno, codes)
    unknown = sorted(set(geno.columns) - {m for s in gmap.values() for m in s.index})
    if unknown and not quiet:
        print(f"  {len(unknown)} marqueurs génotypés hors carte ignorés")
    geno = _split_by_chr(geno, gmap)
    geno = {c: g.fillna(GENO_MISSING).astype(np.int8) for c, g in geno.items()}

    founder_geno = None
    if 'founder_geno' in control:
        fg = _read_table(directory, control['founder_geno'], control,
                         transposed=bool(control.get('founder_geno_transposed', False)))
        fg = encode_genotypes(fg, codes)
        founder_geno = {c: f.fillna(GENO_MISSING).astype(np.int8)
                        for c, f in _split_by_chr(fg, gmap).items()}

    pheno = _read_table(directory, control.get('pheno'), control)
    if pheno is not None:
        pheno = pheno.apply(pd.to_numeric, errors='coerce')
        pheno = pheno[pheno.index.isin(next(iter(geno.values())).index)]
    covar = _read_table(directory, control.get('covar'), control)
    if covar is not None:
        covar = covar.apply(_maybe_numeric)

    cross = Cross(geno, gmap, pheno=pheno, crosstype=crosstype, pmap=pmap, covar=covar,
                  founder_geno=founder_geno, alleles=control.get('alleles'))

    if not quiet:
        print(f"Lecture du croisement (qtl2): {control_file}")
        print(f"  {cross.n_ind} individus, {cross.n_pheno} phénotypes, "
              f"{cross.tot_mar} marqueurs sur {cross.n_chr} chromosomes")
        if n_moved:
            print(f"  {n_moved} positions identiques décalées (jitter)")
    return cross


# ============================================================
# Écriture des résultats
# ============================================================

def scan1_to_frame(out, gmap=None):
    """Résultat de scan1 → table plate (chr, marker, pos, LOD par phénotype)."""
    df = out.reset_index()
    if gmap is not None:
        pos = {(c, m): v for c, s in gmap.items() for m, v in s.items()}
        df.insert(2, 'pos', [pos.get((c, m), np.nan) for c, m in zip(df['chr'], df['marker'])])
    return df


def write_scan1(out, gmap, filepath):
    """Sauvegarde les LOD scores bruts en TSV."""
    df = scan1_to_frame(out, gmap)
    df.to_csv(filepath, sep='\t', index=False, float_format='%.6f')
    print(f"  → {filepath}")
    return df


def write_peaks(peaks, filepath):
    """Sauvegarde la table des pics en TSV."""
    peaks.to_csv(filepath, sep='\t', index=False, float_format='%.4f')
    print(f"  → {filepath}")
