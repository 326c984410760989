"""Vaccination protocol applied to every child (WHO schedule, simplified)."""
from typing import NamedTuple


class DoseDefinition(NamedTuple):
    name: str
    description: str
    age_months: int
    age_text: str


# (name, description, age in months from birth, label)
PROTOCOL: tuple[DoseDefinition, ...] = (
    DoseDefinition("BCG", "Bacillus Calmette-Guérin (Tuberculosis)", 0, "At birth"),
    DoseDefinition("Hepatitis B", "Hepatitis B vaccine", 0, "At birth"),
    DoseDefinition("DPT1", "Diphtheria, Pertussis, Tetanus (1st dose)", 2, "2 months"),
    DoseDefinition("Polio1", "Oral Polio Vaccine (1st dose)", 2, "2 months"),
    DoseDefinition("DPT2", "Diphtheria, Pertussis, Tetanus (2nd dose)", 4, "4 months"),
    DoseDefinition("Polio2", "Oral Polio Vaccine (2nd dose)", 4, "4 months"),
    DoseDefinition("DPT3", "Diphtheria, Pertussis, Tetanus (3rd dose)", 6, "6 months"),
    DoseDefinition("Polio3", "Oral Polio Vaccine (3rd dose)", 6, "6 months"),
    DoseDefinition("Measles1", "Measles vaccine (1st dose)", 9, "9 months"),
    DoseDefinition("MMR", "Measles, Mumps, Rubella", 12, "12 months"),
    DoseDefinition("DPT Booster", "DPT Booster dose", 18, "18 months"),
    DoseDefinition("Measles2", "Measles vaccine (2nd dose)", 24, "2 years"),
)

_BY_NAME = {d.name: d for d in PROTOCOL}

if len(_BY_NAME) != len(PROTOCOL):
    raise RuntimeError("Duplicate dose name in vaccination protocol")


def all_doses() -> tuple[DoseDefinition, ...]:
    return PROTOCOL


def get_dose(name: str) -> DoseDefinition | None:
    return _BY_NAME.get(name)
