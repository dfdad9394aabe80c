"""
Sun Ephemeris Service - Apparent Solar Position

Pure domain logic for computing where the sun is in the sky for an observer.
All functions are pure and deterministic (no I/O, no random state), so callers
can cache downstream work keyed by approximate equality of the result.

Physics Model:
- Julian Day (UT) from the instant, Julian centuries since J2000.0
- Mean solar longitude and mean anomaly from polynomial expansions
- Equation of center (three-term sine series) gives true ecliptic longitude
- Fixed J2000 mean obliquity converts ecliptic longitude to RA/declination
- Greenwich mean sidereal time + observer longitude - RA gives hour angle
- Geometric altitude from the spherical-astronomy formula
- Bennett refraction (arcminutes) lifts geometric to apparent altitude

Constants:
- J2000: Julian Day of the J2000.0 epoch (2451545.0)
- OBLIQUITY_J2000_DEG: Mean obliquity of the ecliptic at J2000 (23.4392911 deg)
- NIGHT_THRESHOLD_RAD: Sun center at -0.833 deg (standard sunrise/sunset)
"""

import math
from datetime import datetime, timezone

from geo_models import SunPosition


def _normalize_deg(angle_deg: float) -> float:
    return angle_deg % 360.0


def _normalize_rad(angle_rad: float) -> float:
    return angle_rad % (2 * math.pi)


class SunEphemerisService:
    """
    Pure solar ephemeris calculations.

    All methods are static and deterministic.
    """

    J2000 = 2451545.0
    UNIX_EPOCH_JD = 2440587.5
    SECONDS_PER_DAY = 86400.0
    OBLIQUITY_J2000_DEG = 23.4392911

    NIGHT_THRESHOLD_DEG = -0.833
    NIGHT_THRESHOLD_RAD = math.radians(NIGHT_THRESHOLD_DEG)

    # Refraction is only applied above this geometric altitude
    REFRACTION_GUARD_DEG = -1.0

    @staticmethod
    def julian_day(instant: datetime) -> float:
        """
        Julian Day (UT) for an instant.

        Naive datetimes are taken as UTC; aware datetimes are converted.
        """
        if instant.tzinfo is None:
            instant = instant.replace(tzinfo=timezone.utc)
        else:
            instant = instant.astimezone(timezone.utc)
        return instant.timestamp() / SunEphemerisService.SECONDS_PER_DAY + SunEphemerisService.UNIX_EPOCH_JD

    @staticmethod
    def equatorial_coordinates(jd_ut: float):
        """
        Sun declination, right ascension and Greenwich mean sidereal time.

        Args:
            jd_ut: Julian Day (UT)

        Returns:
            (declination_rad, right_ascension_rad, gmst_deg)
        """
        days = jd_ut - SunEphemerisService.J2000
        centuries = days / 36525.0

        mean_longitude_deg = _normalize_deg(
            280.46646 + 36000.76983 * centuries + 0.0003032 * centuries * centuries
        )
        mean_anomaly_deg = _normalize_deg(
            357.52911 + 35999.05029 * centuries - 0.0001537 * centuries * centuries
        )
        mean_anomaly = math.radians(mean_anomaly_deg)

        # Equation of center
        center_deg = (
            (1.914602 - 0.004817 * centuries - 0.000014 * centuries * centuries) * math.sin(mean_anomaly)
            + (0.019993 - 0.000101 * centuries) * math.sin(2 * mean_anomaly)
            + 0.000289 * math.sin(3 * mean_anomaly)
        )

        true_longitude = math.radians(_normalize_deg(mean_longitude_deg + center_deg))
        obliquity = math.radians(SunEphemerisService.OBLIQUITY_J2000_DEG)

        right_ascension = _normalize_rad(
            math.atan2(math.cos(obliquity) * math.sin(true_longitude), math.cos(true_longitude))
        )
        declination = math.asin(math.sin(obliquity) * math.sin(true_longitude))

        gmst_deg = _normalize_deg(
            280.46061837
            + 360.985647366289 * days
            + 0.000387933 * centuries * centuries
            - centuries * centuries * centuries / 38710000.0
        )

        return declination, right_ascension, gmst_deg

    @staticmethod
    def refraction_arcmin(altitude_deg: float) -> float:
        """
        Bennett's atmospheric refraction in arcminutes.

        The altitude is clamped to [-1, 89.9] deg so the tangent never blows up
        near the horizon or at the zenith.
        """
        h = max(-1.0, min(89.9, altitude_deg))
        inner_deg = h + 10.3 / (h + 5.11)
        tan_inner = math.tan(math.radians(inner_deg))
        if abs(tan_inner) < 1e-6:
            return 34.0
        return 1.02 / tan_inner

    @staticmethod
    def sun_position(instant: datetime, latitude_deg: float, longitude_deg: float) -> SunPosition:
        """
        Apparent sun position for an observer.

        Args:
            instant: Any datetime (naive = UTC)
            latitude_deg: Observer latitude (-90 to +90, not validated)
            longitude_deg: Observer longitude (-180 to +180, not validated)

        Returns:
            SunPosition with refraction-corrected altitude in [-pi/2, pi/2] and
            azimuth clockwise from north in [0, 2*pi).

        Notes:
            - Out-of-range coordinates give mathematically defined but
              physically meaningless results
            - Bit-for-bit reproducible for a fixed input
        """
        jd_ut = SunEphemerisService.julian_day(instant)
        declination, right_ascension, gmst_deg = SunEphemerisService.equatorial_coordinates(jd_ut)

        lat = math.radians(latitude_deg)
        local_sidereal = _normalize_rad(math.radians(gmst_deg) + math.radians(longitude_deg))

        hour_angle = local_sidereal - right_ascension
        if hour_angle > math.pi:
            hour_angle -= 2 * math.pi
        if hour_angle < -math.pi:
            hour_angle += 2 * math.pi

        sin_altitude = (
            math.sin(lat) * math.sin(declination)
            + math.cos(lat) * math.cos(declination) * math.cos(hour_angle)
        )
        geometric_altitude = math.asin(max(-1.0, min(1.0, sin_altitude)))

        refraction_arcmin = 0.0
        if math.degrees(geometric_altitude) > SunEphemerisService.REFRACTION_GUARD_DEG:
            refraction_arcmin = SunEphemerisService.refraction_arcmin(math.degrees(geometric_altitude))
        apparent_altitude = geometric_altitude + math.radians(refraction_arcmin / 60.0)
        apparent_altitude = max(-math.pi / 2, min(math.pi / 2, apparent_altitude))

        y = -math.cos(declination) * math.sin(hour_angle)
        x = (
            math.sin(declination) * math.cos(lat)
            - math.cos(declination) * math.sin(lat) * math.cos(hour_angle)
        )
        azimuth = _normalize_rad(math.atan2(y, x))

        return SunPosition(altitude_rad=apparent_altitude, azimuth_rad=azimuth)

    @staticmethod
    def is_night(sun: SunPosition) -> bool:
        """Sun center at or below -0.833 deg."""
        return sun.altitude_rad <= SunEphemerisService.NIGHT_THRESHOLD_RAD

    @staticmethod
    def meters_per_pixel(latitude_deg: float, zoom: float) -> float:
        """Web Mercator ground resolution for 256-px tiles."""
        cos_lat = max(0.0, min(1.0, math.cos(math.radians(latitude_deg))))
        return 156543.03392 * cos_lat / math.pow(2.0, zoom)
