from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse

app = FastAPI(title="Mock Staging API")

BANNERS = [{"id": i, "title": f"Banner {i}", "category_id": 1 + i % 3} for i in range(1, 26)]
CATEGORIES = [{"id": i, "name": f"Category {i}"} for i in range(1, 4)]


def _page(items, page: int, per_page: int):
    start = (page - 1) * per_page
    return {
        "data": items[start:start + per_page],
        "meta": {"page": page, "perPage": per_page, "total": len(items)},
    }


@app.get("/api/v1/health")
async def health():
    return {"status": "ok"}


@app.get("/api/v1/front/banners")
async def banners(page: int = Query(1, ge=1), per_page: int = Query(10, ge=1, alias="perPage")):
    return _page(BANNERS, page, per_page)


@app.get("/api/v1/front/banner-categories")
async def banner_categories(page: int = Query(1, ge=1), per_page: int = Query(10, ge=1, alias="perPage")):
    return _page(CATEGORIES, page, per_page)


@app.get("/api/v1/broken")
async def broken():
    return JSONResponse(status_code=500, content={"error": "internal"})


# Run with: uvicorn mock_service.app:app --port 8001 --reload
