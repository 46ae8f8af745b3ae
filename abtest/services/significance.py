"""Two-proportion Z-test for conversion rates."""
import math

from scipy import stats as scipy_stats

from abtest.schemas.results import ConfidenceInterval, SignificanceResult

# Abramowitz-Stegun 7.1.26 coefficients
A1 = 0.254829592
A2 = -0.284496736
A3 = 1.421413741
A4 = -1.453152027
A5 = 1.061405429
P = 0.3275911

# Two-sided critical values for the conventional confidence levels
Z_CRITICAL = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}


def normal_cdf(x: float) -> float:
    """
    Standard normal cumulative distribution function.

    Uses the Abramowitz-Stegun rational approximation of erf, whose
    absolute error is bounded by about 1.5e-7. Results are not more
    precise than that.
    """
    sign = -1.0 if x < 0 else 1.0
    x = abs(x) / math.sqrt(2.0)

    t = 1.0 / (1.0 + P * x)
    y = 1.0 - ((((A5 * t + A4) * t + A3) * t + A2) * t + A1) * t * math.exp(-x * x)

    return 0.5 * (1.0 + sign * y)


def z_critical(confidence_level: float) -> float:
    """
    Two-sided critical value for a confidence level.

    The conventional levels 0.90, 0.95 and 0.99 use their rounded table
    values; any other level is computed from the inverse normal.
    """
    tabulated = Z_CRITICAL.get(round(confidence_level, 4))
    if tabulated is not None:
        return tabulated
    return float(scipy_stats.norm.ppf(1 - (1 - confidence_level) / 2))


class SignificanceCalculator:
    """Pooled-variance Z-test comparing a treatment against a control."""

    def __init__(self, min_sample_size: int = 30):
        self.min_sample_size = min_sample_size

    def calculate_significance(
        self,
        control_conversions: int,
        control_participants: int,
        treatment_conversions: int,
        treatment_participants: int,
        confidence_level: float = 0.95
    ) -> SignificanceResult:
        """
        Compare two conversion rates.

        Args:
            control_conversions: Unique converters in the control
            control_participants: Users assigned to the control
            treatment_conversions: Unique converters in the treatment
            treatment_participants: Users assigned to the treatment
            confidence_level: Two-sided confidence level (default 0.95)

        Returns:
            SignificanceResult. When either arm has fewer than
            ``min_sample_size`` participants the result is never
            significant, has a p-value of 1 and carries a sample size
            recommendation instead of a confidence interval.

        Example:
            >>> calc = SignificanceCalculator()
            >>> calc.calculate_significance(100, 1000, 130, 1000).is_significant
            True
        """
        control_rate = control_conversions / control_participants if control_participants > 0 else 0.0
        treatment_rate = treatment_conversions / treatment_participants if treatment_participants > 0 else 0.0

        relative_improvement = (
            (treatment_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0
        )

        if control_participants < self.min_sample_size or treatment_participants < self.min_sample_size:
            return SignificanceResult(
                is_significant=False,
                p_value=1.0,
                z_score=0.0,
                confidence_level=confidence_level,
                control_rate=control_rate,
                treatment_rate=treatment_rate,
                relative_improvement=relative_improvement,
                confidence_interval=ConfidenceInterval(lower=0.0, upper=0.0),
                sample_size_recommendation=max(
                    100, control_participants * 2, treatment_participants * 2
                )
            )

        pooled_rate = (
            (control_conversions + treatment_conversions)
            / (control_participants + treatment_participants)
        )
        standard_error = math.sqrt(
            pooled_rate * (1 - pooled_rate)
            * (1 / control_participants + 1 / treatment_participants)
        )

        diff = treatment_rate - control_rate
        z_score = diff / standard_error if standard_error > 0 else 0.0

        # Two-sided p-value
        p_value = 2 * (1 - normal_cdf(abs(z_score)))

        margin = z_critical(confidence_level) * standard_error

        return SignificanceResult(
            is_significant=p_value < (1 - confidence_level),
            p_value=p_value,
            z_score=z_score,
            confidence_level=confidence_level,
            control_rate=control_rate,
            treatment_rate=treatment_rate,
            relative_improvement=relative_improvement,
            confidence_interval=ConfidenceInterval(lower=diff - margin, upper=diff + margin)
        )
