"""Synthetic data generation for ensemble learning tests and examples.

The generated tables mimic the kind of data the handbook's tutorials use:
a handful of informative covariates, some pure-noise covariates, an
optional categorical covariate and optional missingness.
"""

from __future__ import annotations

from typing import Literal, Optional

import numpy as np
import pandas as pd


class SyntheticDataGenerator:
    """Generator for synthetic prediction datasets.

    All randomness flows through one ``numpy.random.Generator`` owned by the
    instance, so two generators with the same seed produce identical data.
    """

    def __init__(self, random_state: Optional[int] = None):
        """Initialize the synthetic data generator.

        Args:
            random_state: Random seed for reproducible results
        """
        self.random_state = random_state
        self.rng = np.random.default_rng(random_state)

    def generate(
        self,
        n_samples: int = 500,
        outcome_type: Literal["continuous", "binary", "categorical"] = "continuous",
        n_noise: int = 2,
        include_categorical: bool = True,
        missing_rate: float = 0.0,
        noise_std: float = 1.0,
    ) -> pd.DataFrame:
        """Generate a table with outcome column ``y``.

        Informative covariates are ``x1`` (linear), ``x2`` (quadratic) and
        ``x3`` (interaction with ``x1``); ``noise1..noiseK`` are independent
        of the outcome; ``site`` is a three-level categorical with a level
        effect.

        Args:
            n_samples: Number of rows
            outcome_type: Type of outcome to simulate
            n_noise: Number of pure-noise covariates
            include_categorical: Whether to add the categorical ``site`` column
            missing_rate: Fraction of covariate values set missing in ``x1``
                and ``x2``
            noise_std: Standard deviation of the outcome noise

        Returns:
            DataFrame with covariates and the outcome column ``y``
        """
        x1 = self.rng.normal(0, 1, n_samples)
        x2 = self.rng.uniform(-2, 2, n_samples)
        x3 = self.rng.binomial(1, 0.4, n_samples)

        signal = 1.0 + 1.5 * x1 - 0.8 * x2**2 + 1.2 * x1 * x3

        data = {"x1": x1, "x2": x2, "x3": x3}
        for k in range(1, n_noise + 1):
            data[f"noise{k}"] = self.rng.normal(0, 1, n_samples)

        if include_categorical:
            site = self.rng.choice(["north", "south", "west"], size=n_samples)
            signal = signal + np.select(
                [site == "north", site == "south"], [0.5, -0.5], default=0.0
            )
            data["site"] = site

        if outcome_type == "continuous":
            y = signal + self.rng.normal(0, noise_std, n_samples)
        elif outcome_type == "binary":
            centered = (signal - signal.mean()) / signal.std()
            y = self.rng.binomial(1, 1 / (1 + np.exp(-1.5 * centered)))
        elif outcome_type == "categorical":
            noisy = signal + self.rng.normal(0, noise_std, n_samples)
            cuts = np.quantile(noisy, [1 / 3, 2 / 3])
            y = np.array(["low", "mid", "high"])[np.digitize(noisy, cuts)]
        else:
            raise ValueError(f"Unknown outcome_type '{outcome_type}'")

        frame = pd.DataFrame(data)
        frame["y"] = y

        if missing_rate > 0:
            for column in ("x1", "x2"):
                mask = self.rng.random(n_samples) < missing_rate
                frame.loc[mask, column] = np.nan

        return frame


def make_ensemble_data(
    n_samples: int = 500,
    outcome_type: Literal["continuous", "binary", "categorical"] = "continuous",
    n_noise: int = 2,
    include_categorical: bool = True,
    missing_rate: float = 0.0,
    random_state: Optional[int] = None,
) -> pd.DataFrame:
    """Convenience wrapper around :meth:`SyntheticDataGenerator.generate`."""
    return SyntheticDataGenerator(random_state=random_state).generate(
        n_samples=n_samples,
        outcome_type=outcome_type,
        n_noise=n_noise,
        include_categorical=include_categorical,
        missing_rate=missing_rate,
    )
