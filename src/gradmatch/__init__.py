"""Adaptive gradient matching for parameter inference in ODE models.

Importing the package enables 64-bit JAX arrays for the whole process
(``jax.config.update("jax_enable_x64", True)``). GP fitting relies on
double precision; code that needs JAX's 32-bit default should run in a
separate process.
"""
from .archive import AGMResult
from .config import AGMConfig
from .data import Dataset, make_dataset
from .exceptions import AGMError, ConfigurationError, GPNumericalError, ODEShapeError
from .gp_fit import fit_all, fit_hyperparameters
from .gradient_model import GradientModel, VariableGradientModel
from .inference import AdaptiveGradientMatching, agm
from .kernels import GPHyperparameters
from .tempering import exchange_probability, mismatch_ladder, temperature_ladder

__version__ = "0.1.0"

__all__ = [
    "AGMConfig",
    "AGMError",
    "AGMResult",
    "AdaptiveGradientMatching",
    "ConfigurationError",
    "Dataset",
    "GPHyperparameters",
    "GPNumericalError",
    "GradientModel",
    "ODEShapeError",
    "VariableGradientModel",
    "agm",
    "exchange_probability",
    "fit_all",
    "fit_hyperparameters",
    "make_dataset",
    "mismatch_ladder",
    "temperature_ladder",
]
