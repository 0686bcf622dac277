"""metag_etl.derived

Read-only indicator layer.  Nothing here writes to the database; every
indicator is computed on demand from the raw measurements currently stored
plus the WHO growth standards.

Indicators:
  timepoint            label for a sample date relative to the birth date
  z-score              weight-for-age z-score (LMS method, WHO adjustment
                       beyond +/-3 SD)
  z-score category     AGA / SGA, from the patient's first z-score
  z-score subcategory  SGA / no catch-up / early catch-up / late catch-up
  mother's age at delivery
  mother's pre-pregnancy BMI and its category
  difference in body mass at delivery and its category
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Any

import psycopg

from metag_etl.normalize import parse_date, parse_numeric

# ---------------------------------------------------------------------------
# Timepoints
# ---------------------------------------------------------------------------

# (label, first day, last day) relative to the birth date, inclusive.
TIMEPOINT_WINDOWS: tuple[tuple[str, int, int], ...] = (
    ("meconium", 0, 1),
    ("3d", 2, 4),
    ("2w", 10, 18),
    ("6w", 35, 49),
    ("3m", 79, 101),
    ("6m", 169, 191),
    ("9m", 259, 281),
    ("1y", 354, 376),
    ("1.5y", 537, 559),
    ("2y", 719, 741),
    ("2.5y", 902, 924),
    ("3y", 1084, 1106),
)

NO_TIMEPOINT = "NA"

EARLY_CATCH_UP_LABELS = frozenset({"meconium", "3d", "2w", "6w", "3m", "6m"})

WEIGHT_FOR_AGE = "weight_for_age"


def timepoint_label(birthdate: date, createdate: date) -> str:
    """Return the timepoint label for a sample date, or 'NA' outside every window."""
    days = (createdate - birthdate).days
    for label, lo, hi in TIMEPOINT_WINDOWS:
        if lo <= days <= hi:
            return label
    return NO_TIMEPOINT


# ---------------------------------------------------------------------------
# Growth z-scores
# ---------------------------------------------------------------------------

def zscore(l: float, m: float, s: float, value: float) -> float:
    """Weight-for-age z-score with the WHO restricted-tail adjustment."""
    z = ((value / m) ** l - 1) / (s * l)
    if -3 <= z <= 3:
        return round(z, 2)

    def sd(k: int) -> float:
        return m * (1 + l * s * k) ** (1 / l)

    if z > 3:
        sd23pos = sd(3) - sd(2)
        return round(3 + (value - sd(3)) / sd23pos, 2)
    sd23neg = sd(-2) - sd(-3)
    return round(-3 + (value - sd(-3)) / sd23neg, 2)


def zscore_category(first_z: float | None) -> str | None:
    if first_z is None:
        return None
    return "AGA" if first_z >= -2.0 else "SGA"


def first_catch_up(series: list[tuple[date, str, float]]) -> tuple[date, str] | None:
    """Return (date, timepoint) of the first catch-up for an SGA-born patient.

    series is (createdate, timepoint, z) sorted by date.  Catch-up is the first
    later z-score above -2 that sits at least 0.67 above the lowest earlier one.
    """
    if not series or series[0][2] >= -2.0:
        return None
    for idx in range(1, len(series)):
        d, label, z = series[idx]
        lowest = min(x[2] for x in series[:idx])
        if z > -2.0 and abs(lowest - z) >= 0.67:
            return d, label
    return None


def zscore_subcategory(
    series: list[tuple[date, str, float]],
    createdate: date,
) -> str | None:
    if not series:
        return None
    first_date, _, first_z = series[0]
    if first_z >= -2.0:
        return "AGA"
    if createdate == first_date:
        return "SGA"
    catch_up = first_catch_up(series)
    if catch_up is None or catch_up[0] > createdate:
        return "no catch-up"
    return "early catch-up" if catch_up[1] in EARLY_CATCH_UP_LABELS else "late catch-up"


# ---------------------------------------------------------------------------
# Maternal indicators
# ---------------------------------------------------------------------------

def body_mass_index(mass_kg: float, height_m: float) -> float:
    return round(mass_kg / height_m ** 2, 2)


def bmi_category(bmi: float) -> str:
    if bmi < 18.5:
        return "underweight"
    if bmi < 25.0:
        return "normal weight"
    if bmi < 30.0:
        return "overweight"
    return "obesity"


# BMI category -> (lower, upper) recommended gain in kg during pregnancy
_WEIGHT_GAIN_RANGES = {
    "underweight": (12.5, 18.0),
    "normal weight": (11.5, 16.0),
    "overweight": (7.0, 11.5),
    "obesity": (5.0, 9.0),
}


def weight_gain_category(bmi: float, gain_kg: float) -> str:
    lower, upper = _WEIGHT_GAIN_RANGES[bmi_category(bmi)]
    if gain_kg < lower:
        return "not enough"
    if gain_kg > upper:
        return "too much"
    return "appropriate"


def age_at(birthdate: date, on: date) -> float:
    return round((on - birthdate).days / 365.25, 2)


# ---------------------------------------------------------------------------
# Query interface
# ---------------------------------------------------------------------------

def _measurements(conn: psycopg.Connection, sample_id: int) -> dict[str, str]:
    rows = conn.execute(
        """
        SELECT t.name, m.value
        FROM measurement m
        JOIN type t ON t.id = m.id_type
        WHERE m.id_sample = %s
        """,
        (sample_id,),
    ).fetchall()
    return {name: value for name, value in rows}


def _first_case_sample(conn: psycopg.Connection, patient_id: int) -> tuple[int, date] | None:
    row = conn.execute(
        """
        SELECT id, createdate FROM sample
        WHERE id_patient = %s AND NOT iscontrol
        ORDER BY createdate
        LIMIT 1
        """,
        (patient_id,),
    ).fetchone()
    return (row[0], row[1]) if row else None


def _standard(
    conn: psycopg.Connection, sex: str, age_days: int, name: str = WEIGHT_FOR_AGE
) -> tuple[float, float, float] | None:
    row = conn.execute(
        "SELECT l, m, s FROM standard WHERE name = %s AND sex = %s AND age = %s",
        (name, sex, age_days),
    ).fetchone()
    if row is None:
        return None
    return float(row[0]), float(row[1]), float(row[2])


def _zscore_series(
    conn: psycopg.Connection, patient_id: int, birthdate: date, sex: str | None
) -> list[tuple[date, str, float]]:
    if sex is None:
        return []
    rows = conn.execute(
        """
        SELECT s.createdate, m.value
        FROM sample s
        JOIN measurement m ON m.id_sample = s.id
        JOIN type t ON t.id = m.id_type
        WHERE s.id_patient = %s AND NOT s.iscontrol AND t.name = 'body mass'
        ORDER BY s.createdate
        """,
        (patient_id,),
    ).fetchall()
    series: list[tuple[date, str, float]] = []
    for createdate, value in rows:
        grams = parse_numeric(value)
        lms = _standard(conn, sex, (createdate - birthdate).days)
        if grams is None or lms is None:
            continue
        z = zscore(*lms, float(grams / Decimal(1000)))
        series.append((createdate, timepoint_label(birthdate, createdate), z))
    return series


def patient_indicators(conn: psycopg.Connection, patient_id: int) -> dict[str, Any]:
    """Patient-level indicators derived from the statics of the first sample."""
    row = conn.execute(
        "SELECT alias, birthdate FROM patient WHERE id = %s", (patient_id,)
    ).fetchone()
    if row is None:
        raise LookupError(f"patient {patient_id} not found")
    alias, birthdate = row
    out: dict[str, Any] = {"patient": alias, "birthdate": birthdate}

    first = _first_case_sample(conn, patient_id)
    statics = _measurements(conn, first[0]) if first else {}
    out.update(statics)

    mother_birth = statics.get("mother's birth date")
    if mother_birth:
        out["mother's age at delivery"] = age_at(parse_date(mother_birth), birthdate)

    before = parse_numeric(statics.get("maternal body mass before pregnancy"))
    height = parse_numeric(statics.get("mother's height"))
    at_delivery = parse_numeric(statics.get("maternal body mass at delivery"))
    if before is not None and height:
        bmi = body_mass_index(float(before), float(height))
        out["mother's pre-pregnancy BMI"] = bmi
        out["mother's pre-pregnancy BMI category"] = bmi_category(bmi)
        if at_delivery is not None:
            gain = float(at_delivery - before)
            out["difference in body mass at delivery"] = gain
            out["category of difference in body mass at delivery"] = (
                weight_gain_category(bmi, gain)
            )

    series = _zscore_series(conn, patient_id, birthdate, statics.get("sex"))
    out["z-score category"] = zscore_category(series[0][2] if series else None)
    return out


def sample_indicators(conn: psycopg.Connection, sample_id: int) -> dict[str, Any]:
    """Sample-level indicators: timepoint, z-score and its subcategory."""
    row = conn.execute(
        """
        SELECT s.id_patient, s.createdate, s.iscontrol, p.birthdate
        FROM sample s JOIN patient p ON p.id = s.id_patient
        WHERE s.id = %s
        """,
        (sample_id,),
    ).fetchone()
    if row is None:
        raise LookupError(f"sample {sample_id} not found")
    patient_id, createdate, iscontrol, birthdate = row
    out: dict[str, Any] = {
        "timepoint": timepoint_label(birthdate, createdate),
        "iscontrol": iscontrol,
    }
    out.update(_measurements(conn, sample_id))
    if iscontrol:
        return out

    first = _first_case_sample(conn, patient_id)
    sex = _measurements(conn, first[0]).get("sex") if first else None
    series = _zscore_series(conn, patient_id, birthdate, sex)
    current = [z for d, _, z in series if d == createdate]
    out["z-score"] = current[0] if current else None
    out["z-score category"] = zscore_category(series[0][2] if series else None)
    out["z-score subcategory"] = zscore_subcategory(series, createdate) if current else None
    return out
