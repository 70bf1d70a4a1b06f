from fastapi import APIRouter, HTTPException, Query, Request, status
from fastapi.responses import Response

from api.utils.country_store import SORT_OPTIONS, CountryStore
from api.utils.country_tools import RefreshOrchestrator
from api.utils.exceptions import (
    InvalidSortKey,
    PersistenceError,
    RefreshValidationError,
    SourceUnavailable,
)
from api.utils.summary_image import SummaryImageGenerator
from api.v1.schemas.country_info import (
    CountryInfo,
    CountryList,
    Pagination,
    RefreshResult,
    StatusInfo,
    TopCountry,
)

country_ops = APIRouter(tags=["Countries"])


def _store(request: Request) -> CountryStore:
    return request.app.state.store


def _orchestrator(request: Request) -> RefreshOrchestrator:
    return request.app.state.orchestrator


def _summary(request: Request) -> SummaryImageGenerator:
    return request.app.state.summary


@country_ops.post("/countries/refresh", status_code=status.HTTP_200_OK, response_model=RefreshResult)
async def refresh_countries_endpoint(request: Request):
    """
    Fetches all countries and exchange rates, then upserts them in one
    transaction and regenerates the summary image.
    """
    try:
        outcome = await _orchestrator(request).refresh_countries()

    except SourceUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error": "External data source unavailable",
                "details": f"Could not fetch data from {e.host}",
            },
        )

    except RefreshValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={"error": "Validation failed", "details": e.warnings[:20]},
        )

    except PersistenceError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "Internal server error", "details": str(e)},
        )

    except Exception as e:
        # Handle unexpected errors gracefully
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to refresh countries data: {str(e)}",
        )

    return RefreshResult(
        processed_count=outcome.processed_count,
        duration_seconds=outcome.duration_seconds,
        last_refreshed_at=outcome.last_refreshed_at,
        top5=[TopCountry(name=c.country_name, estimated_gdp=c.estimated_gdp) for c in outcome.top5],
        warnings=outcome.warnings,
    )


@country_ops.get("/countries", status_code=status.HTTP_200_OK, response_model=CountryList)
async def get_all_countries(
    request: Request,
    region: str | None = Query(None, description="Filter by region (case-insensitive)"),
    currency: str | None = Query(None, description="Filter by currency code"),
    search: str | None = Query(None, description="Substring of name or capital"),
    sort: str = Query("name_asc", description=f"One of: {', '.join(SORT_OPTIONS)}"),
    limit: int | None = Query(None, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    store = _store(request)

    try:
        countries = await store.list_filtered(
            region=region,
            currency=currency,
            search=search,
            sort=sort,
            limit=limit,
            offset=offset,
        )
    except InvalidSortKey as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "Validation failed", "details": {"sort": str(e)}},
        )

    total = await store.count_filtered(region=region, currency=currency, search=search)

    return CountryList(
        data=[CountryInfo.from_row(c) for c in countries],
        pagination=Pagination(
            total=total,
            count=len(countries),
            limit=limit,
            offset=offset if limit is not None else 0,
        ),
        filters={"region": region, "currency": currency, "search": search, "sort": sort},
    )


@country_ops.get("/countries/image", status_code=status.HTTP_200_OK)
async def get_summary_image(request: Request):
    try:
        image = await _summary(request).read()
    except Exception as e:
        raise HTTPException(status_code=500, detail={"error": "Internal server error", "details": str(e)})

    if image is None:
        raise HTTPException(status_code=404, detail={"error": "Summary image not found"})

    return Response(content=image, media_type="image/png")


@country_ops.get("/countries/{name}", status_code=status.HTTP_200_OK, response_model=CountryInfo)
async def get_country_by_name(name: str, request: Request):
    """
    Retrieve a specific country by its name (case-insensitive).
    """
    country = await _store(request).get_by_name(name)
    if not country:
        raise HTTPException(status_code=404, detail=f"Country '{name}' not found.")

    return CountryInfo.from_row(country)


@country_ops.delete("/countries/{name}", status_code=status.HTTP_200_OK)
async def delete_country(name: str, request: Request):
    """
    Delete a country record by name (case-insensitive).
    """
    country = await _store(request).delete_by_name(name)
    if not country:
        raise HTTPException(status_code=404, detail=f"Country '{name}' not found.")

    return {
        "message": f"Country '{country.country_name}' deleted successfully.",
        "data": CountryInfo.from_row(country),
    }


@country_ops.get("/status", status_code=status.HTTP_200_OK, response_model=StatusInfo)
async def get_status(request: Request):
    """
    Outcome of the most recent refresh run plus the current row count.
    """
    snapshot = await _orchestrator(request).get_status()
    return StatusInfo(
        processed_count=snapshot.processed_count,
        last_refreshed_at=snapshot.last_refreshed_at,
        duration_seconds=snapshot.duration_seconds,
        status=snapshot.status,
        total_countries=snapshot.total_countries,
    )
