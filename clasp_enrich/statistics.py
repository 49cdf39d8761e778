"""
Moderated t-test for protein log2 ratios.

One-sample moderated t-statistics in the style of limma (lmFit with an intercept-only
design followed by eBayes):

    s2_post = (d * s2 + d0 * s0^2) / (d + d0)
    t       = mean / sqrt(s2_post / n)

The prior degrees of freedom d0 and prior variance s0^2 are estimated from all
proteins at once by matching the moments of log(s2) to a scaled F distribution.
This borrows variance information across proteins, which stabilizes the test when
each protein has only two replicate ratios (one residual degree of freedom).

Reference: Smyth 2004, Stat Appl Genet Mol Biol. doi:10.2202/1544-6115.1027
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma

from .errors import InsufficientSampleError
from .rollup import ratio_column

logger = logging.getLogger(__name__)


def trigamma_inverse(y: float) -> float:
    """Solve trigamma(x) = y for x by Newton iteration."""
    if y > 1e7:
        return 1.0 / np.sqrt(y)
    if y < 1e-6:
        return 1.0 / y

    x = 0.5 + 1.0 / y
    for _ in range(50):
        tri = polygamma(1, x)
        dif = tri * (1.0 - tri / y) / polygamma(2, x)
        x += dif
        if -dif / x < 1e-8:
            break
    else:
        logger.warning("trigamma_inverse did not converge after 50 iterations")
    return float(x)


def fit_f_dist(variances: np.ndarray, df1: np.ndarray) -> tuple[float, float]:
    """
    Moment estimation of the scaled F distribution followed by sample variances.

    Args:
        variances: Residual variances, one per protein (NaN allowed)
        df1: Residual degrees of freedom for each variance

    Returns:
        Tuple of (prior variance s0^2, prior degrees of freedom d0). d0 is
        ``inf`` when the observed variances show no more spread than expected
        from sampling alone.
    """
    x = np.asarray(variances, dtype=float)
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape)

    ok = np.isfinite(x) & np.isfinite(df1) & (x > -1e-15) & (df1 > 1e-15)
    n = int(ok.sum())
    if n == 0:
        return np.nan, np.nan
    if n == 1:
        return float(x[ok][0]), 0.0

    x = np.maximum(x[ok], 0.0)
    df1 = df1[ok]

    m = np.median(x)
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df1 / 2) + np.log(df1 / 2)
    emean = e.mean()
    evar = np.sum((e - emean) ** 2) / (n - 1)
    evar = evar - np.mean(polygamma(1, df1 / 2))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        s20 = float(np.exp(emean + digamma(df2 / 2) - np.log(df2 / 2)))
    else:
        df2 = np.inf
        s20 = float(np.exp(emean))

    return s20, float(df2)


def squeeze_var(variances: np.ndarray, df: np.ndarray) -> tuple[np.ndarray, float, float]:
    """
    Shrink residual variances toward the pooled prior.

    Rows with zero residual degrees of freedom receive the prior variance.

    Returns:
        Tuple of (posterior variances, prior variance, prior degrees of freedom)
    """
    variances = np.asarray(variances, dtype=float)
    df = np.asarray(df, dtype=float)

    s20, d0 = fit_f_dist(variances, df)

    if np.isinf(d0):
        return np.full_like(variances, s20), s20, d0

    observed = np.where(df > 0, variances, 0.0)
    with np.errstate(divide='ignore', invalid='ignore'):
        posterior = (df * observed + d0 * s20) / (df + d0)
    return posterior, s20, d0


@dataclass
class ModeratedTResult:
    """
    Result of the moderated t-test.

    ``table`` is indexed by protein_id with columns mean_log2_ratio, n_obs,
    df_residual, s2, s2_post, t, df_total, p_value and adjusted_p_value.
    """
    table: pd.DataFrame
    s2_prior: float
    df_prior: float
    n_complete: int


def moderated_t_test(
    matrix: pd.DataFrame,
    min_complete: int = 2,
) -> ModeratedTResult:
    """
    Test whether each protein's mean log2 ratio differs from zero.

    Proteins with at least one defined replicate ratio are tested. Those with a
    single value have no residual variance of their own and take the prior.

    Args:
        matrix: Protein x replicate matrix of log2 ratios
        min_complete: Minimum number of proteins with all replicates defined

    Returns:
        ModeratedTResult

    Raises:
        InsufficientSampleError: If fewer than ``min_complete`` proteins are complete
    """
    values = matrix.to_numpy(dtype=float)
    n_obs = np.isfinite(values).sum(axis=1)

    n_complete = int((n_obs == matrix.shape[1]).sum()) if matrix.shape[1] else 0
    if matrix.shape[1] < 2 or n_complete < min_complete:
        raise InsufficientSampleError(
            f"{n_complete} proteins with complete ratios across "
            f"{list(matrix.columns)}; at least {min_complete} required "
            f"with two or more replicates"
        )

    tested = n_obs >= 1
    vals = values[tested]
    n = n_obs[tested].astype(float)

    mean = np.nanmean(vals, axis=1)
    df_residual = n - 1
    sum_sq = np.nansum((vals - mean[:, np.newaxis]) ** 2, axis=1)
    with np.errstate(divide='ignore', invalid='ignore'):
        s2 = np.where(df_residual > 0, sum_sq / df_residual, np.nan)

    s2_post, s2_prior, df_prior = squeeze_var(s2, df_residual)

    df_pooled = df_residual.sum()
    df_total = np.minimum(df_residual + df_prior, df_pooled)

    with np.errstate(divide='ignore', invalid='ignore'):
        t = mean / np.sqrt(s2_post / n)
    p_value = 2 * stats.t.sf(np.abs(t), df_total)

    adjusted = np.full_like(p_value, np.nan)
    finite = np.isfinite(p_value)
    if finite.any():
        adjusted[finite] = stats.false_discovery_control(p_value[finite], method='bh')

    table = pd.DataFrame({
        'mean_log2_ratio': mean,
        'n_obs': n_obs[tested],
        'df_residual': df_residual,
        's2': s2,
        's2_post': s2_post,
        't': t,
        'df_total': df_total,
        'p_value': p_value,
        'adjusted_p_value': adjusted,
    }, index=matrix.index[tested])
    table.index.name = 'protein_id'

    logger.info(
        f"Moderated t-test on {len(table)} proteins ({n_complete} complete): "
        f"prior df={df_prior:.2f}, prior variance={s2_prior:.4g}"
    )

    return ModeratedTResult(
        table=table,
        s2_prior=s2_prior,
        df_prior=df_prior,
        n_complete=n_complete,
    )


def call_quant_significance(
    matrix: pd.DataFrame,
    adj_p_threshold: float = 0.01,
    min_fold_change: float = 5.0,
    min_complete: int = 2,
) -> pd.DataFrame:
    """
    Quantitative significance calls for every tested protein.

    A protein is significant when its BH-adjusted p-value is below
    ``adj_p_threshold`` and its mean log2 ratio exceeds ``log2(min_fold_change)``.

    Args:
        matrix: Protein x replicate matrix of log2 ratios (columns are sample names)
        adj_p_threshold: Adjusted p-value cutoff
        min_fold_change: Minimum enrichment on the linear scale
        min_complete: Passed to ``moderated_t_test``

    Returns:
        DataFrame indexed by protein_id with one ``<sample>_log2_ratio`` column per
        replicate, mean_log2_ratio, p_value, adjusted_p_value and is_significant
    """
    result = moderated_t_test(matrix, min_complete=min_complete)
    table = result.table

    calls = matrix.loc[table.index].rename(columns=ratio_column)
    calls['mean_log2_ratio'] = table['mean_log2_ratio']
    calls['p_value'] = table['p_value']
    calls['adjusted_p_value'] = table['adjusted_p_value']
    calls['is_significant'] = (
        (table['adjusted_p_value'] < adj_p_threshold)
        & (table['mean_log2_ratio'] > np.log2(min_fold_change))
    )

    logger.info(
        f"Quantitative calls: {int(calls['is_significant'].sum())} of {len(calls)} proteins "
        f"significant (adj. p < {adj_p_threshold}, fold change > {min_fold_change})"
    )
    return calls
