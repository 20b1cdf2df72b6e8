"""Environment configuration for the Graduation Eligibility engine."""

import os
from typing import Dict

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()


class Thresholds(BaseModel):
    """Graduation requirements, all expressed as percentages."""
    attendance: float = 75.0
    average: float = 75.0
    section_minimum: float = 60.0


def parse_thresholds(value: str) -> Thresholds:
    """
    Parse a 'key:value,key:value' string into Thresholds.

    Unknown keys are rejected so a typo does not silently leave a default in place.
    """
    parsed: Dict[str, float] = {}
    for item in value.split(','):
        if not item.strip():
            continue
        key, raw = item.split(':')
        key = key.strip()
        if key not in Thresholds.model_fields:
            raise ValueError(f"Unknown graduation threshold '{key}'")
        parsed[key] = float(raw.strip())
    return Thresholds(**parsed)


def env_flag(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() == 'true'


THRESHOLDS = parse_thresholds(
    os.getenv('GRADUATION_THRESHOLDS', 'attendance:75,average:75,section_minimum:60')
)

CODE_VALIDITY_DAYS = int(os.getenv('CODE_VALIDITY_DAYS', '7'))

ALLOW_ORIGINS = os.getenv('ALLOW_ORIGINS', '*').split(',')

DEBUG = env_flag('DEBUG')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
