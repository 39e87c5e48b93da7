from fastapi import APIRouter

from src.modules.sources.models import SOURCES
from src.modules.sources.schemas import SourceResponse

router = APIRouter()


@router.get("", response_model=list[SourceResponse])
async def list_sources():
    return [
        SourceResponse(
            id=s.id,
            name=s.name,
            base_url=s.base_url,
            listing=s.listing.value,
            modes=sorted(s.modes, key=lambda m: m.value),
        )
        for s in SOURCES.values()
    ]
