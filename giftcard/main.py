from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# IMPORTANT:
# This imports ALL models so SQLAlchemy registers tables + FKs correctly
import giftcard.models  # noqa: F401
from giftcard.core.logging import configure_logging
from giftcard.routers.gift_cards import router as gift_cards_router


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title="Gift Card Redemption")

    # CORS for the frontend dev server
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Gift cards
    app.include_router(gift_cards_router)

    return app


app = create_app()
