"""
Exécution parallèle des unités de travail indépendantes (chromosomes,
lots de phénotypes, permutations).
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from multiprocessing import cpu_count

from tqdm import tqdm

from .config import ConfigurationError


def resolve_cores(cores):
    """cores=0 → tous les CPU disponibles."""
    if cores is None:
        return 1
    if cores < 0:
        raise ConfigurationError(f"cores doit être >= 0, reçu: {cores}")
    if cores == 0:
        return cpu_count()
    return int(cores)


def parallel_map(func, items, cores=1, desc=None, quiet=True):
    """
    Applique func à chaque élément et retourne les résultats dans l'ordre
    des éléments, quel que soit l'ordre de terminaison.
    """
    items = list(items)
    n_workers = min(resolve_cores(cores), max(len(items), 1))
    results = [None] * len(items)

    if n_workers <= 1:
        for i, item in enumerate(tqdm(items, desc=desc, leave=False, disable=quiet)):
            results[i] = func(item)
        return results

    with ThreadPoolExecutor(max_workers=n_workers) as executor:
        future_to_idx = {executor.submit(func, item): i for i, item in enumerate(items)}
        for future in tqdm(as_completed(future_to_idx), total=len(items),
                           desc=desc, leave=False, disable=quiet):
            results[future_to_idx[future]] = future.result()
    return results
