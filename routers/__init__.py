from .analytics_api import router as analytics_api_router
from .assignments_api import router as assignments_api_router
from .events_api import router as events_api_router
from .masters_api import router as masters_api_router
from .requests_api import router as requests_api_router
from .tools_api import router as tools_api_router

ALL_ROUTERS = (
    tools_api_router,
    assignments_api_router,
    requests_api_router,
    events_api_router,
    analytics_api_router,
    masters_api_router,
)
