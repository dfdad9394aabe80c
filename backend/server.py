from fastapi import FastAPI, APIRouter, HTTPException
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import logging
from pathlib import Path
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, timezone

from engine_settings import EngineSettings
from geo_models import Bounds, PlaceType
from map_session import CameraState, MapSession
from providers import get_providers
from sun_ephemeris_service import SunEphemerisService

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

# Set up logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

ENGINE_SETTINGS = EngineSettings.from_env()

# Create the main app
app = FastAPI()

# Create routers
api_router = APIRouter(prefix="/api")

# ==================== Models ====================

class SunPositionRequest(BaseModel):
    """Sun position for one place and instant"""
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    time: Optional[datetime] = None  # ISO 8601; naive values are UTC, default now

class SunPositionResponse(BaseModel):
    altitude_deg: float
    azimuth_deg: float
    altitude_rad: float
    azimuth_rad: float
    is_night: bool

class ViewportRequest(BaseModel):
    """Map viewport snapshot"""
    south: float = Field(ge=-90, le=90)
    west: float = Field(ge=-180, le=180)
    north: float = Field(ge=-90, le=90)
    east: float = Field(ge=-180, le=180)
    zoom: float = Field(ge=0, le=24)
    time: Optional[datetime] = None
    enabled_types: Optional[List[PlaceType]] = None  # default: eatery + pub

class ShadowPolygonResponse(BaseModel):
    building_id: str
    rings: List[List[List[float]]]  # [ring][vertex][lng, lat]
    fill_opacity: float

class ShadowsResponse(BaseModel):
    sun: SunPositionResponse
    base_opacity: float
    building_count: int
    shadows: List[ShadowPolygonResponse] = []

class PlaceStateResponse(BaseModel):
    id: str
    name: str
    type: PlaceType
    latitude: float
    longitude: float
    sunlit: bool
    icon: str
    has_outdoor_seating: Optional[bool] = None
    outdoor_seats: Optional[int] = None
    outdoor_covered: Optional[bool] = None

class SunlitResponse(BaseModel):
    sun: SunPositionResponse
    places: List[PlaceStateResponse] = []


def _instant(value: Optional[datetime]) -> datetime:
    return value if value is not None else datetime.now(timezone.utc)


def _sun_response(sun) -> SunPositionResponse:
    return SunPositionResponse(
        altitude_deg=round(sun.altitude_deg, 4),
        azimuth_deg=round(sun.azimuth_deg, 4),
        altitude_rad=sun.altitude_rad,
        azimuth_rad=sun.azimuth_rad,
        is_night=SunEphemerisService.is_night(sun),
    )


def _camera(request: ViewportRequest) -> CameraState:
    if request.south > request.north:
        raise ValueError(f"south ({request.south}) must not exceed north ({request.north})")
    bounds = Bounds(south=request.south, west=request.west, north=request.north, east=request.east)
    return CameraState(center=bounds.center, zoom=request.zoom, bounds=bounds)


async def _redraw_view(request: ViewportRequest):
    camera = _camera(request)
    session = MapSession.from_providers(get_providers(), ENGINE_SETTINGS)
    try:
        if request.enabled_types is not None:
            session.enabled_types = set(request.enabled_types)
        await session.load_view(camera.bounds, camera.zoom)
        result = await session.redraw(_instant(request.time), camera)
        return session.places, result
    finally:
        session.dispose()

# ==================== API Routes ====================

@api_router.get("/")
async def root():
    return {"message": "Shadecast API", "version": "1.0", "features": ["sun_position", "building_shadows", "sunlit_places", "terrain_horizon"]}

@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

@api_router.post("/sun-position", response_model=SunPositionResponse)
async def sun_position(request: SunPositionRequest):
    """Apparent sun altitude and azimuth for a place and instant."""
    try:
        sun = SunEphemerisService.sun_position(_instant(request.time), request.latitude, request.longitude)
        return _sun_response(sun)
    except ValueError as e:
        logger.error(f"[SUN] Invalid parameters for sun position: {e}")
        raise HTTPException(
            status_code=400,
            detail=f"Invalid parameters: {str(e)}"
        )

@api_router.post("/shadows", response_model=ShadowsResponse)
async def building_shadows(request: ViewportRequest):
    """Building shadow polygons for a viewport at an instant."""
    try:
        _, result = await _redraw_view(request)
        shadows = [
            ShadowPolygonResponse(
                building_id=drawable.building_id,
                rings=[[[p.lng, p.lat] for p in ring] for ring in drawable.rings],
                fill_opacity=round(drawable.fill_opacity, 4),
            )
            for drawable in result.shadows.drawables
        ]
        logger.info(f"[SHADOWS] {len(shadows)} shadows for zoom={request.zoom}")
        return ShadowsResponse(
            sun=_sun_response(result.sun),
            base_opacity=round(result.shadows.base_opacity, 4),
            building_count=len(result.shadows.polygons),
            shadows=shadows,
        )
    except ValueError as e:
        logger.error(f"[SHADOWS] Invalid parameters: {e}")
        raise HTTPException(
            status_code=400,
            detail=f"Invalid parameters: {str(e)}"
        )
    except Exception as e:
        logger.error(f"[SHADOWS] Unexpected error computing shadows: {e}")
        raise HTTPException(
            status_code=500,
            detail="Unable to compute shadows at this time"
        )

@api_router.post("/sunlit", response_model=SunlitResponse)
async def sunlit_places(request: ViewportRequest):
    """Sun/shade state of every enabled place in a viewport."""
    try:
        places_loaded, result = await _redraw_view(request)
        by_id = {p.id: p for p in places_loaded}
        places = []
        for place_id, sunlit in result.sunlit.items():
            place = by_id[place_id]
            places.append(
                PlaceStateResponse(
                    id=place.id,
                    name=place.name,
                    type=place.type,
                    latitude=place.location.lat,
                    longitude=place.location.lng,
                    sunlit=sunlit,
                    icon=result.icons[place_id],
                    has_outdoor_seating=place.has_outdoor_seating,
                    outdoor_seats=place.outdoor_seats,
                    outdoor_covered=place.outdoor_covered,
                )
            )
        logger.info(f"[SUNLIT] {sum(1 for p in places if p.sunlit)}/{len(places)} places sunlit")
        return SunlitResponse(sun=_sun_response(result.sun), places=places)
    except ValueError as e:
        logger.error(f"[SUNLIT] Invalid parameters: {e}")
        raise HTTPException(
            status_code=400,
            detail=f"Invalid parameters: {str(e)}"
        )
    except Exception as e:
        logger.error(f"[SUNLIT] Unexpected error evaluating places: {e}")
        raise HTTPException(
            status_code=500,
            detail="Unable to evaluate places at this time"
        )


# Add CORS middleware first, before including router
app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)
