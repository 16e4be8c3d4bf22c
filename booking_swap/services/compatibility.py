"""
Compatibility scoring between two bookings.

Pure functions only: nothing here touches the database, and a report is
recomputed on every read. Any factor whose inputs are missing or unusable
falls back to a neutral score of 50 ("fair") instead of raising.
"""

import math
import re
from datetime import datetime
from typing import Optional

from aws_lambda_powertools import Logger

from booking_swap.config import settings

logger = Logger(service=settings.POWERTOOLS_SERVICE_NAME)


WEIGHTS = {
    "location": 0.25,
    "dates": 0.20,
    "value": 0.20,
    "accommodationType": 0.20,
    "guestCapacity": 0.15,
}

NEUTRAL_SCORE = 50

DATE_PENALTY_PER_DAY = 10
SAME_MONTH_BONUS = 5

VALUE_PARITY_PCT = 10
VALUE_ZERO_PCT = 50

REGIONS = [
    ["new york", "manhattan", "brooklyn", "queens", "bronx", "nyc"],
    ["los angeles", "hollywood", "beverly hills", "santa monica"],
    ["san francisco", "oakland", "berkeley", "san jose", "bay area"],
    ["london", "westminster", "kensington", "chelsea", "camden", "greenwich"],
    ["paris", "montmartre", "marais", "saint germain"],
    ["rome", "vatican", "trastevere"],
    ["barcelona", "eixample", "gracia"],
    ["tokyo", "shibuya", "shinjuku", "ginza", "roppongi"],
]

COUNTRIES = [
    ["usa", "united states", "new york", "los angeles", "chicago", "miami", "san francisco"],
    ["uk", "united kingdom", "england", "london", "manchester", "birmingham"],
    ["france", "paris", "lyon", "marseille", "nice"],
    ["germany", "berlin", "munich", "hamburg", "cologne"],
    ["italy", "rome", "milan", "florence", "venice"],
    ["spain", "madrid", "barcelona", "seville", "valencia"],
    ["japan", "tokyo", "osaka", "kyoto"],
    ["australia", "sydney", "melbourne", "brisbane", "perth"],
]

CONTINENTS = [
    ["europe", "uk", "france", "germany", "italy", "spain", "london", "paris", "rome",
     "berlin", "madrid", "barcelona", "milan", "munich", "lyon"],
    ["north america", "usa", "canada", "mexico", "new york", "los angeles", "chicago", "toronto"],
    ["asia", "japan", "china", "korea", "thailand", "singapore", "tokyo", "osaka"],
    ["oceania", "australia", "new zealand", "sydney", "melbourne"],
    ["south america", "brazil", "argentina", "chile", "colombia"],
    ["africa", "south africa", "egypt", "morocco", "kenya"],
]

CITY_COORDINATES = {
    "new york": (40.7128, -74.0060),
    "los angeles": (34.0522, -118.2437),
    "london": (51.5074, -0.1278),
    "paris": (48.8566, 2.3522),
    "rome": (41.9028, 12.4964),
    "barcelona": (41.3874, 2.1686),
    "berlin": (52.5200, 13.4050),
    "tokyo": (35.6762, 139.6503),
    "sydney": (-33.8688, 151.2093),
}

ACCOMMODATION_ALIASES = [
    ("bed and breakfast", "guesthouse"),
    ("b&b", "guesthouse"),
    ("guesthouse", "guesthouse"),
    ("hostel", "hostel"),
    ("resort", "resort"),
    ("motel", "hotel"),
    ("hotel", "hotel"),
    ("inn", "hotel"),
    ("condominium", "apartment"),
    ("condo", "apartment"),
    ("apartment", "apartment"),
    ("flat", "apartment"),
    ("villa", "villa"),
    ("cottage", "cottage"),
    ("cabin", "cottage"),
    ("house", "house"),
    ("home", "house"),
]

SIMILAR_TYPES = [
    {"hotel", "resort"},
    {"house", "villa", "cottage"},
    {"hostel", "guesthouse"},
]

COMPATIBLE_TYPES = [
    {"hotel", "apartment"},
    {"resort", "villa"},
    {"apartment", "house"},
    {"villa", "cottage"},
    {"hotel", "guesthouse"},
]

LUXURY_LEVELS = {
    "resort": 5,
    "villa": 4,
    "hotel": 3,
    "apartment": 2,
    "house": 2,
    "cottage": 2,
    "guesthouse": 1,
    "hostel": 1,
}


def status_for(score: float) -> str:
    if score >= 85:
        return "excellent"
    if score >= 70:
        return "good"
    if score >= 45:
        return "fair"
    return "poor"


def _clamp(score: float) -> int:
    return int(round(max(0, min(100, score))))


def _factor(name: str, score: float, details: str) -> dict:
    score = _clamp(score)
    return {
        "score": score,
        "weight": WEIGHTS[name],
        "status": status_for(score),
        "details": details,
    }


def neutral_factor(name: str, details: str) -> dict:
    return {
        "score": NEUTRAL_SCORE,
        "weight": WEIGHTS[name],
        "status": "fair",
        "details": details,
    }


def _get(booking, attr):
    return getattr(booking, attr, None) if booking is not None else None


def normalize_location(location: str) -> str:
    return re.sub(r"[^\w\s]", "", location.lower()).strip()


def _in_same_group(groups, first: str, second: str) -> bool:
    return any(
        any(place in first for place in group) and any(place in second for place in group)
        for group in groups
    )


def haversine_km(first: tuple, second: tuple) -> int:
    lat1, lng1 = map(math.radians, first)
    lat2, lng2 = map(math.radians, second)
    a = (
        math.sin((lat2 - lat1) / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin((lng2 - lng1) / 2) ** 2
    )
    return round(6371 * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a)))


def _known_city(location: str) -> Optional[str]:
    for city in CITY_COORDINATES:
        if city in location:
            return city
    return None


def _distance_adjustment(distance: int) -> int:
    if distance < 50:
        return 5
    if distance < 200:
        return 0
    if distance < 500:
        return -5
    if distance < 1000:
        return -10
    return -15


def score_location(source, target) -> dict:
    source_location = _get(source, "location")
    target_location = _get(target, "location")
    if not source_location or not target_location:
        return neutral_factor("location", "Location unavailable for one of the bookings")

    first = normalize_location(source_location)
    second = normalize_location(target_location)
    if not first or not second:
        return neutral_factor("location", "Location unavailable for one of the bookings")

    if first == second:
        score, details = 100, "Exact location match"
    elif _in_same_group(REGIONS, first, second):
        score, details = 80, "Same metropolitan area"
    elif _in_same_group(COUNTRIES, first, second):
        score, details = 60, "Same country, different regions"
    elif _in_same_group(CONTINENTS, first, second):
        score, details = 40, "Same continent"
    else:
        score, details = 20, "Different continents"

    first_city, second_city = _known_city(first), _known_city(second)
    if first_city and second_city and first != second:
        distance = haversine_km(CITY_COORDINATES[first_city], CITY_COORDINATES[second_city])
        score += _distance_adjustment(distance)
        details += f" (est. {distance}km)"

    return _factor("location", score, details)


def _stay_days(check_in: datetime, check_out: datetime) -> int:
    return math.ceil((check_out - check_in).total_seconds() / 86400)


def score_dates(source, target) -> dict:
    values = [_get(source, "check_in"), _get(source, "check_out"),
              _get(target, "check_in"), _get(target, "check_out")]
    if any(value is None for value in values):
        return neutral_factor("dates", "Stay dates unavailable for one of the bookings")

    source_in, source_out, target_in, target_out = values
    source_days = _stay_days(source_in, source_out)
    target_days = _stay_days(target_in, target_out)
    if source_days <= 0 or target_days <= 0:
        return neutral_factor("dates", "Stay dates are not a valid range")

    mismatch = abs(source_days - target_days)
    score = max(0, 100 - DATE_PENALTY_PER_DAY * mismatch)
    if mismatch == 0:
        details = f"Same stay length ({source_days} nights)"
    else:
        details = f"Stay lengths differ by {mismatch} nights ({source_days} vs {target_days})"

    if (source_in.year, source_in.month) == (target_in.year, target_in.month):
        score = min(100, score + SAME_MONTH_BONUS)
        details += f" +{SAME_MONTH_BONUS} same-month bonus"

    return _factor("dates", score, details)


def _comparable_value(booking) -> Optional[float]:
    value = _get(booking, "swap_value")
    if value is None:
        value = _get(booking, "original_price")
    if value is None or value <= 0:
        return None
    return float(value)


def score_value(source, target) -> dict:
    source_value = _comparable_value(source)
    target_value = _comparable_value(target)
    if source_value is None or target_value is None:
        return neutral_factor("value", "Swap value unavailable for one of the bookings")

    average = (source_value + target_value) / 2
    pct = abs(source_value - target_value) / average * 100

    if pct <= VALUE_PARITY_PCT:
        score = 100
    elif pct >= VALUE_ZERO_PCT:
        score = 0
    else:
        score = 100 * (VALUE_ZERO_PCT - pct) / (VALUE_ZERO_PCT - VALUE_PARITY_PCT)

    details = f"{pct:.1f}% value difference ({min(source_value, target_value):,.0f} vs {max(source_value, target_value):,.0f})"
    return _factor("value", score, details)


def normalize_accommodation_type(kind: str) -> str:
    normalized = kind.lower().strip()
    for alias, canonical in ACCOMMODATION_ALIASES:
        if alias in normalized:
            return canonical
    return normalized


def _luxury_adjustment(first: str, second: str) -> int:
    gap = abs(LUXURY_LEVELS.get(first, 2) - LUXURY_LEVELS.get(second, 2))
    return {0: 5, 1: 0, 2: -5}.get(gap, -10)


def score_accommodation(source, target) -> dict:
    source_type = _get(source, "accommodation_type")
    target_type = _get(target, "accommodation_type")
    if not source_type or not target_type or not source_type.strip() or not target_type.strip():
        return neutral_factor("accommodationType", "Accommodation type unavailable for one of the bookings")

    first = normalize_accommodation_type(source_type)
    second = normalize_accommodation_type(target_type)
    pair = {first, second}

    if first == second:
        score, details = 100, f"Same type: {first}"
    elif any(pair <= group for group in SIMILAR_TYPES):
        score, details = 75, f"Similar types: {first} / {second}"
    elif pair in COMPATIBLE_TYPES:
        score, details = 50, f"Compatible types: {first} / {second}"
    else:
        score, details = 25, f"Different types: {first} / {second}"

    score += _luxury_adjustment(first, second)
    return _factor("accommodationType", score, details)


def score_guests(source, target) -> dict:
    source_guests = _get(source, "guest_count")
    target_guests = _get(target, "guest_count")
    if not source_guests or not target_guests or source_guests < 0 or target_guests < 0:
        return neutral_factor("guestCapacity", "Guest capacity unavailable for one of the bookings")

    gap = abs(source_guests - target_guests)
    largest = max(source_guests, target_guests)

    if gap == 0:
        score = 100
    elif gap == 1:
        score = 85
    elif gap == 2:
        score = 70
    elif gap <= largest * 0.25:
        score = 50
    else:
        score = 25

    details = f"{source_guests} vs {target_guests} guests"
    utilisation = min(source_guests, target_guests) / largest
    if utilisation >= 0.8:
        score += 5
    elif utilisation < 0.5:
        score -= 10
        details += " (capacity mismatch)"

    return _factor("guestCapacity", score, details)


SCORERS = {
    "location": score_location,
    "dates": score_dates,
    "value": score_value,
    "accommodationType": score_accommodation,
    "guestCapacity": score_guests,
}


def overall_score(factors: dict) -> int:
    total_weight = sum(factor["weight"] for factor in factors.values())
    if not total_weight:
        return NEUTRAL_SCORE
    weighted = sum(factor["score"] * factor["weight"] for factor in factors.values())
    return _clamp(weighted / total_weight)


RECOMMENDATIONS = {
    "location": ("Excellent location match, little travel coordination needed",
                 "Consider travel costs and logistics for both parties"),
    "dates": ("Similar stay lengths",
              "Review date flexibility before proposing"),
    "value": ("Well-matched booking values",
              "Discuss a value adjustment to balance the exchange"),
    "accommodationType": ("Comparable accommodation types",
                          "Make sure both parties accept the accommodation difference"),
    "guestCapacity": ("Guest capacity suits both parties",
                      "Verify capacity for the different guest counts"),
}

ISSUES = {
    "location": "Large location difference may affect travel costs",
    "dates": "Stay lengths differ substantially",
    "value": "Large value difference may require additional payment",
    "accommodationType": "Accommodation type mismatch may not meet expectations",
    "guestCapacity": "Guest count difference may affect suitability",
}


def recommendations_for(factors: dict, overall: int) -> list:
    recommendations = []
    for name, factor in factors.items():
        good, bad = RECOMMENDATIONS[name]
        if factor["score"] >= 80:
            recommendations.append(good)
        elif factor["score"] < 60:
            recommendations.append(bad)

    if overall >= 80:
        recommendations.append("Excellent swap match, highly recommended")
    elif overall >= 65:
        recommendations.append("Good swap opportunity with strong compatibility")
    elif overall >= 40:
        recommendations.append("Moderate compatibility, discuss details before proceeding")
    return recommendations


def issues_for(factors: dict) -> list:
    issues = [ISSUES[name] for name, factor in factors.items() if factor["score"] < 40]
    if sum(1 for factor in factors.values() if factor["score"] < 50) >= 3:
        issues.append("Multiple compatibility concerns, careful consideration recommended")
    return issues


def score_compatibility(source_booking, target_booking) -> dict:
    """Score how well two bookings fit each other for a swap"""
    factors = {}
    for name, scorer in SCORERS.items():
        try:
            factors[name] = scorer(source_booking, target_booking)
        except (TypeError, ValueError, AttributeError, ZeroDivisionError) as e:
            logger.warning(f"Could not score {name}, using neutral default: {e}")
            factors[name] = neutral_factor(name, f"Unable to analyse {name}")

    overall = overall_score(factors)
    return {
        "overallScore": overall,
        "factors": factors,
        "recommendations": recommendations_for(factors, overall),
        "potentialIssues": issues_for(factors),
    }
