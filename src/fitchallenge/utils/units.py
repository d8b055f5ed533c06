from typing import Optional

KM_PER_MILE = 1.60934
MILES_PER_KM = 0.621371
MINUTES_PER_HOUR = 60

def km_to_miles(km: float) -> float:
    return km * MILES_PER_KM

def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE

def minutes_to_hours(minutes: float) -> float:
    return minutes / MINUTES_PER_HOUR

def hours_to_minutes(hours: float) -> float:
    return hours * MINUTES_PER_HOUR

def convert_units(value: float, from_unit: str, to_unit: str) -> float:
    """Convert between different units."""
    if from_unit == to_unit:
        return value

    conversions = {
        ('km', 'miles'): km_to_miles,
        ('miles', 'km'): miles_to_km,
        ('min', 'h'): minutes_to_hours,
        ('h', 'min'): hours_to_minutes,
    }

    if (from_unit, to_unit) in conversions:
        return conversions[(from_unit, to_unit)](value)

    raise ValueError(f"Cannot convert from {from_unit} to {to_unit}")

def format_distance(km: float, unit: str = "km") -> str:
    """Render a stored kilometer value in the user's preferred unit."""
    if unit == "miles":
        return f"{km_to_miles(km):.2f} mi"
    return f"{km:.2f} km"

def format_duration(minutes: float) -> str:
    hours = int(minutes // MINUTES_PER_HOUR)
    rest = round(minutes % MINUTES_PER_HOUR)
    if rest == MINUTES_PER_HOUR:
        hours, rest = hours + 1, 0
    return f"{hours}h {rest}m" if hours > 0 else f"{rest}m"

def describe_activity(activity, distance_unit: Optional[str] = "km") -> str:
    """One-line summary of a stored activity, e.g. ``Workout: 1h 30m``."""
    name = activity.custom_name or activity.activity_type.value
    dimension = activity.metric.dimension
    value = activity.value

    if not value:
        return name
    if dimension == "distance":
        return f"{name}: {format_distance(value, distance_unit or 'km')}"
    if dimension == "time":
        return f"{name}: {format_duration(value)}"
    if dimension == "steps":
        return f"{name}: {int(value):,} steps"
    if dimension == "calories":
        return f"{name}: {value:g} calories"
    return f"{name}: {value:g}"
