import logging
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from api.utils.country_sources import RawCountry
from api.utils.exceptions import RecordValidationError

logger = logging.getLogger(__name__)

GDP_MULTIPLIER_MIN = 1000
GDP_MULTIPLIER_MAX = 2000

# Largest value a BIGINT population column holds.
MAX_POPULATION = 2**63 - 1


@dataclass
class Reconciled:
    name: str
    capital: Optional[str]
    region: Optional[str]
    population: int
    currency_code: Optional[str]
    exchange_rate: Optional[float]
    estimated_gdp: Optional[float]
    flag_url: Optional[str]
    warning: Optional[str] = None


@dataclass
class ReconcileReport:
    accepted: List[Reconciled] = field(default_factory=list)
    rejected: List[RecordValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _validate(raw: RawCountry):
    errors: Dict[str, str] = {}

    name = raw.name.strip() if isinstance(raw.name, str) else ""
    if not name:
        errors["name"] = "is required"

    population = raw.population
    if population is None:
        errors["population"] = "is required"
    elif isinstance(population, bool) or not isinstance(population, (int, float)):
        errors["population"] = "must be a number"
    elif isinstance(population, float) and not population.is_integer():
        errors["population"] = "must be a whole number"
    elif population < 0:
        errors["population"] = "must be >= 0"
    elif population > MAX_POPULATION:
        errors["population"] = "is out of range"

    if errors:
        raise RecordValidationError(raw.name, errors)

    return name, int(population)


def pick_currency_code(currencies: Dict[str, dict]) -> Optional[str]:
    """
    Lexicographically smallest code, so countries reporting several
    currencies resolve the same way whatever order the upstream uses.
    """
    codes = sorted(
        code.strip().upper() for code in currencies if isinstance(code, str) and code.strip()
    )
    return codes[0] if codes else None


class Reconciler:
    """
    Turns a RawCountry plus the run's exchange-rate table into a row
    ready for the store. Pure apart from the injected random source.
    """

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    def reconcile(self, raw: RawCountry, rates: Dict[str, float]) -> Reconciled:
        name, population = _validate(raw)

        currency_code = pick_currency_code(raw.currencies)
        warning = None

        if currency_code is None:
            exchange_rate = None
            estimated_gdp = 0.0
        else:
            rate = rates.get(currency_code)
            if rate is None or rate <= 0:
                exchange_rate = None
                estimated_gdp = None
                warning = f"{name}: no exchange rate for currency {currency_code}"
            else:
                exchange_rate = float(rate)
                # Half-open [1000, 2000): uniform() may return the lower bound.
                multiplier = self.rng.uniform(GDP_MULTIPLIER_MIN, GDP_MULTIPLIER_MAX)
                estimated_gdp = population * multiplier / exchange_rate

        return Reconciled(
            name=name,
            capital=_clean(raw.capital),
            region=_clean(raw.region),
            population=population,
            currency_code=currency_code,
            exchange_rate=exchange_rate,
            estimated_gdp=estimated_gdp,
            flag_url=_clean(raw.flag_url),
            warning=warning,
        )

    def reconcile_all(self, raws: List[RawCountry], rates: Dict[str, float]) -> ReconcileReport:
        report = ReconcileReport()
        for raw in raws:
            try:
                record = self.reconcile(raw, rates)
            except RecordValidationError as e:
                report.rejected.append(e)
                report.warnings.append(str(e))
                logger.warning("Skipping record: %s", e)
                continue

            if record.warning:
                report.warnings.append(record.warning)
                logger.warning(record.warning)
            report.accepted.append(record)
        return report
