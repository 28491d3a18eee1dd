"""longimpute — Draws engine for reference-based multiple imputation.

Fits a mixed model for repeated measures (MMRM) to longitudinal trial
data with intercurrent events (ICEs), and returns parameter samples
under Bayesian (Gibbs sampling), approximate Bayesian (bootstrap) or
conditional mean (bootstrap / jackknife) regimes.  Outcomes after an
ICE handled by a non-MAR strategy are hidden from the fit.

Public API:
    .. autosummary::
        draws
        set_vars
        method_bayes
        method_approxbayes
        method_condmean
        LongData
        fit_mmrm
        fit_mmrm_multiopt
        fit_mcmc
        available_covariances
        register_covariance
        resolve_covariance
        format_draws
        print_draws
        get_n_jobs
        set_n_jobs
        set_seed
        Draws
        SampleList
        SampleSingle
"""

from ._config import get_n_jobs, set_n_jobs, set_seed
from ._draws import (
    draws,
    extract_data_nmar_as_na,
    get_bootstrap_draws,
    get_jackknife_draws,
    get_mcmc_draws,
    get_mmrm_sample,
)
from ._results import (
    Draws,
    SampleList,
    SampleSingle,
    as_draws,
    as_sample_list,
    as_sample_single,
)
from .covariance import (
    CovarianceStructure,
    available_covariances,
    register_covariance,
    resolve_covariance,
)
from .display import format_draws, print_draws
from .formula import as_model_df, as_simple_formula
from .longdata import LongData
from .mcmc import MCMCFit, fit_mcmc
from .methods import (
    Method,
    MethodApproxBayes,
    MethodBayes,
    MethodCondMean,
    method_approxbayes,
    method_bayes,
    method_condmean,
)
from .mmrm import MMRMFit, WarmStart, fit_mmrm, fit_mmrm_multiopt
from .scaler import Scaler
from .vars import Vars, set_vars

__all__ = [
    "Draws",
    "SampleList",
    "SampleSingle",
    "as_draws",
    "as_sample_list",
    "as_sample_single",
    "draws",
    "extract_data_nmar_as_na",
    "get_bootstrap_draws",
    "get_jackknife_draws",
    "get_mcmc_draws",
    "get_mmrm_sample",
    "CovarianceStructure",
    "available_covariances",
    "register_covariance",
    "resolve_covariance",
    "format_draws",
    "print_draws",
    "as_model_df",
    "as_simple_formula",
    "LongData",
    "MCMCFit",
    "fit_mcmc",
    "Method",
    "MethodApproxBayes",
    "MethodBayes",
    "MethodCondMean",
    "method_approxbayes",
    "method_bayes",
    "method_condmean",
    "MMRMFit",
    "WarmStart",
    "fit_mmrm",
    "fit_mmrm_multiopt",
    "Scaler",
    "Vars",
    "set_vars",
    "get_n_jobs",
    "set_n_jobs",
    "set_seed",
]

__version__ = "0.1.0"
