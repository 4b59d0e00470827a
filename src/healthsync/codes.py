"""Integer code → readable name tables.

Source platforms encode categorical values, workout activity types, and some
metadata fields as bare integers.  Upload files must never carry those opaque
codes when a readable name is knowable, so every table here is consulted by
the normalizer, and any code missing from a table becomes ``unknown_<code>``.
Future platform releases will add codes these tables do not know yet.
"""

from __future__ import annotations

from typing import Mapping

# ---------------------------------------------------------------------------
# Category sample values
# ---------------------------------------------------------------------------

SLEEP_ANALYSIS: dict[int, str] = {
    0: "inBed",
    1: "asleepUnspecified",
    2: "awake",
    3: "asleepCore",
    4: "asleepDeep",
    5: "asleepREM",
}

STAND_HOUR: dict[int, str] = {
    0: "stood",
    1: "idle",
}

# Cardiac events (high / low heart rate, irregular rhythm) carry no payload
# beyond their presence.
CARDIAC_EVENT: dict[int, str] = {
    0: "present",
}

PRESENCE: dict[int, str] = {
    0: "present",
    1: "notPresent",
}

SEVERITY: dict[int, str] = {
    0: "unspecified",
    1: "notPresent",
    2: "mild",
    3: "moderate",
    4: "severe",
}

APPETITE_CHANGES: dict[int, str] = {
    0: "unspecified",
    1: "noChange",
    2: "decreased",
    3: "increased",
}

MENSTRUAL_FLOW: dict[int, str] = {
    1: "unspecified",
    2: "light",
    3: "medium",
    4: "heavy",
    5: "none",
}

CERVICAL_MUCUS_QUALITY: dict[int, str] = {
    1: "dry",
    2: "sticky",
    3: "creamy",
    4: "watery",
    5: "eggWhite",
}

OVULATION_TEST_RESULT: dict[int, str] = {
    1: "negative",
    2: "luteinizingHormoneSurge",
    3: "indeterminate",
    4: "estrogenSurge",
}

LOW_CARDIO_FITNESS_EVENT: dict[int, str] = {
    1: "lowFitness",
}

WALKING_STEADINESS_EVENT: dict[int, str] = {
    1: "initialLow",
    2: "initialVeryLow",
    3: "repeatLow",
    4: "repeatVeryLow",
}

AUDIO_EXPOSURE_EVENT: dict[int, str] = {
    1: "limitExceeded",
}

# Category types with no dedicated table use the platform's generic value.
NOT_APPLICABLE: dict[int, str] = {
    0: "notApplicable",
}

# Export spellings that predate the current value names.
VALUE_NAME_ALIASES: dict[str, int] = {
    "HKCategoryValueSleepAnalysisAsleep": 1,
}

_VALUE_PREFIX = "HKCategoryValue"
_CATEGORY_TYPE_PREFIX = "HKCategoryTypeIdentifier"

CATEGORY_VALUE_TABLES: dict[str, Mapping[int, str]] = {
    "HKCategoryTypeIdentifierSleepAnalysis": SLEEP_ANALYSIS,
    "HKCategoryTypeIdentifierAppleStandHour": STAND_HOUR,
    "HKCategoryTypeIdentifierHighHeartRateEvent": CARDIAC_EVENT,
    "HKCategoryTypeIdentifierLowHeartRateEvent": CARDIAC_EVENT,
    "HKCategoryTypeIdentifierIrregularHeartRhythmEvent": CARDIAC_EVENT,
    "HKCategoryTypeIdentifierLowCardioFitnessEvent": LOW_CARDIO_FITNESS_EVENT,
    "HKCategoryTypeIdentifierAppleWalkingSteadinessEvent": WALKING_STEADINESS_EVENT,
    "HKCategoryTypeIdentifierHeadphoneAudioExposureEvent": AUDIO_EXPOSURE_EVENT,
    "HKCategoryTypeIdentifierEnvironmentalAudioExposureEvent": AUDIO_EXPOSURE_EVENT,
    "HKCategoryTypeIdentifierMenstrualFlow": MENSTRUAL_FLOW,
    "HKCategoryTypeIdentifierCervicalMucusQuality": CERVICAL_MUCUS_QUALITY,
    "HKCategoryTypeIdentifierOvulationTestResult": OVULATION_TEST_RESULT,
    "HKCategoryTypeIdentifierAppetiteChanges": APPETITE_CHANGES,
    "HKCategoryTypeIdentifierMoodChanges": PRESENCE,
    "HKCategoryTypeIdentifierSleepChanges": PRESENCE,
    "HKCategoryTypeIdentifierConstipation": SEVERITY,
    "HKCategoryTypeIdentifierHeadache": SEVERITY,
    "HKCategoryTypeIdentifierFatigue": SEVERITY,
    "HKCategoryTypeIdentifierFever": SEVERITY,
    "HKCategoryTypeIdentifierNausea": SEVERITY,
    "HKCategoryTypeIdentifierCoughing": SEVERITY,
    "HKCategoryTypeIdentifierShortnessOfBreath": SEVERITY,
}

# ---------------------------------------------------------------------------
# Workout activity types
# ---------------------------------------------------------------------------

WORKOUT_ACTIVITY_TYPES: dict[int, str] = {
    1: "americanFootball",
    2: "archery",
    3: "australianFootball",
    4: "badminton",
    5: "baseball",
    6: "basketball",
    7: "bowling",
    8: "boxing",
    9: "climbing",
    10: "cricket",
    11: "crossTraining",
    12: "curling",
    13: "cycling",
    14: "dance",
    16: "elliptical",
    17: "equestrianSports",
    18: "fencing",
    19: "fishing",
    20: "functionalStrengthTraining",
    21: "golf",
    22: "gymnastics",
    23: "handball",
    24: "hiking",
    25: "hockey",
    26: "hunting",
    27: "lacrosse",
    28: "martialArts",
    29: "mindAndBody",
    31: "paddleSports",
    32: "play",
    33: "preparationAndRecovery",
    34: "racquetball",
    35: "rowing",
    36: "rugby",
    37: "running",
    38: "sailing",
    39: "skatingSports",
    40: "snowSports",
    41: "soccer",
    42: "softball",
    43: "squash",
    44: "stairClimbing",
    45: "surfingSports",
    46: "swimming",
    47: "tableTennis",
    48: "tennis",
    49: "trackAndField",
    50: "traditionalStrengthTraining",
    51: "volleyball",
    52: "walking",
    53: "waterFitness",
    54: "waterPolo",
    55: "waterSports",
    56: "wrestling",
    57: "yoga",
    58: "barre",
    59: "coreTraining",
    60: "crossCountrySkiing",
    61: "downhillSkiing",
    62: "flexibility",
    63: "highIntensityIntervalTraining",
    64: "jumpRope",
    65: "kickboxing",
    66: "pilates",
    67: "snowboarding",
    68: "stairs",
    69: "stepTraining",
    70: "wheelchairWalkPace",
    71: "wheelchairRunPace",
    72: "taiChi",
    73: "mixedCardio",
    74: "handCycling",
    75: "discSports",
    76: "fitnessGaming",
    77: "cardioDance",
    78: "socialDance",
    79: "pickleball",
    80: "cooldown",
    82: "swimBikeRun",
    83: "transition",
    84: "underwaterDiving",
    3000: "other",
}

# ---------------------------------------------------------------------------
# Enumerated metadata fields
# ---------------------------------------------------------------------------

METADATA_VALUE_TABLES: dict[str, Mapping[int, str]] = {
    "HKHeartRateMotionContext": {
        0: "notSet",
        1: "sedentary",
        2: "active",
    },
    "HKSwimmingLocationType": {
        0: "unknown",
        1: "pool",
        2: "openWater",
    },
    "HKSwimmingStrokeStyle": {
        0: "unknown",
        1: "mixed",
        2: "freestyle",
        3: "backstroke",
        4: "breaststroke",
        5: "butterfly",
        6: "kickboard",
    },
    "HKVO2MaxTestType": {
        1: "maxExercise",
        2: "predictionSubMaxExercise",
        3: "predictionNonExercise",
    },
    "HKBloodGlucoseMealTime": {
        1: "preprandial",
        2: "postprandial",
    },
    "HKInsulinDeliveryReason": {
        1: "basal",
        2: "bolus",
    },
    "HKWeatherCondition": {
        0: "none",
        1: "clear",
        2: "fair",
        3: "partlyCloudy",
        4: "mostlyCloudy",
        5: "cloudy",
        6: "foggy",
        7: "haze",
        8: "windy",
        9: "blustery",
        10: "smoky",
        11: "dust",
        12: "snow",
        13: "hail",
        14: "sleet",
        15: "freezingDrizzle",
        16: "freezingRain",
        17: "mixedRainAndHail",
        18: "mixedRainAndSnow",
        19: "mixedRainAndSleet",
        20: "mixedSnowAndSleet",
        21: "drizzle",
        22: "scatteredShowers",
        23: "showers",
        24: "thunderstorms",
        25: "tropicalStorm",
        26: "hurricane",
        27: "tornado",
    },
}


def lookup(table: Mapping[int, str], code: int) -> str:
    """Return the name for ``code``, or ``unknown_<code>`` when unmapped."""
    return table.get(code, f"unknown_{code}")


def category_table(type_id: str) -> Mapping[int, str]:
    return CATEGORY_VALUE_TABLES.get(type_id, NOT_APPLICABLE)


def category_name(type_id: str, code: int) -> str:
    return lookup(category_table(type_id), code)


def unknown_value_name(type_id: str, raw_name: str) -> str:
    """Readable ``unknown_<name>`` for a spelled-out value no table knows.

    ``HKCategoryValueSleepAnalysisDozing`` on the sleep type becomes
    ``unknown_dozing``.
    """
    name = raw_name.removeprefix(_VALUE_PREFIX)
    name = name.removeprefix(type_id.removeprefix(_CATEGORY_TYPE_PREFIX)) or name
    return f"unknown_{name[:1].lower()}{name[1:]}"


def activity_name(code: int) -> str:
    return lookup(WORKOUT_ACTIVITY_TYPES, code)


def code_for_name(table: Mapping[int, str], raw_name: str) -> int | None:
    """Reverse-lookup a code from a (possibly prefixed) value name.

    Export formats spell values out, e.g.
    ``HKCategoryValueSleepAnalysisAsleepDeep`` or ``HKWorkoutActivityTypeRunning``.
    The match is on the table name with its first letter capitalized, as a
    suffix of ``raw_name``; the longest matching name wins so ``asleepCore``
    is not mistaken for a shorter entry.
    """
    if raw_name.lstrip("-").isdigit():
        return int(raw_name)
    if raw_name in VALUE_NAME_ALIASES:
        return VALUE_NAME_ALIASES[raw_name]
    best: tuple[int, int] | None = None
    for code, name in table.items():
        suffix = name[:1].upper() + name[1:]
        if raw_name == name or raw_name.endswith(suffix):
            if best is None or len(name) > best[1]:
                best = (code, len(name))
    return best[0] if best else None
