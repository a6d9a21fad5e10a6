import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from strawberry.fastapi import GraphQLRouter

from . import config
from .schema.schema import schema
from .store import DocumentStore, RedisDocumentStore

# Load environment variables
load_dotenv()

logging.basicConfig(level=config.get_log_level())
logger = logging.getLogger(__name__)


async def get_context(request: Request):
    return {
        "store": request.app.state.store,
        "document_path": request.app.state.document_path,
    }


def create_app(store: Optional[DocumentStore] = None, document_path: Optional[str] = None) -> FastAPI:
    app = FastAPI(title=f"{config.PROJECT_NAME} API", description=config.PROJECT_DESCRIPTION)
    app.state.store = store or RedisDocumentStore()
    app.state.document_path = document_path or config.get_plan_document_path()

    # Read-only GraphQL views of the shared plan
    graphql_app = GraphQLRouter(schema, context_getter=get_context)
    app.include_router(graphql_app, prefix="/graphql")

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "stage": config.get_stage()}

    logger.info(f"[api] {config.PROJECT_NAME} API ready for {app.state.document_path}")
    return app


app = create_app()
