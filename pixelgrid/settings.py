# pixelgrid/settings.py

import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("pixelgrid_backend")

# --- Configuration ---
DATABASE_URL          = os.getenv("DATABASE_URL", "sqlite:///pixels.db")
STRIPE_SECRET_KEY     = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
CURRENCY              = os.getenv("CURRENCY", "usd")

IS_LOCAL_DB = DATABASE_URL.startswith("sqlite")


@dataclass(frozen=True)
class PricingConfig:
    """
    Read-only pricing inputs. All prices are integer minor units (cents).
    """
    floor_price: int = 100
    price_increment: int = 100
    free_allocation_max: int = 3
    protection_window: timedelta = timedelta(hours=24)
    protection_override_multiplier: Decimal = Decimal("10")
    protection_surcharge_multiplier: Decimal = Decimal("4")
    grid_width: int = 1000
    grid_height: int = 1000
    max_bulk_cells: int = 100

    def as_public_dict(self) -> dict:
        return {
            "floorPrice": self.floor_price,
            "priceIncrement": self.price_increment,
            "freeAllocationMax": self.free_allocation_max,
            "protectionWindowSeconds": int(self.protection_window.total_seconds()),
            "protectionOverrideMultiplier": str(self.protection_override_multiplier),
            "protectionSurchargeMultiplier": str(self.protection_surcharge_multiplier),
            "gridWidth": self.grid_width,
            "gridHeight": self.grid_height,
            "maxBulkCells": self.max_bulk_cells,
            "currency": CURRENCY,
        }


def load_pricing_config() -> PricingConfig:
    return PricingConfig(
        floor_price=int(os.getenv("FLOOR_PRICE_CENTS", "100")),
        price_increment=int(os.getenv("PRICE_INCREMENT_CENTS", "100")),
        free_allocation_max=int(os.getenv("FREE_ALLOCATION_MAX", "3")),
        protection_window=timedelta(hours=float(os.getenv("PROTECTION_WINDOW_HOURS", "24"))),
        protection_override_multiplier=Decimal(os.getenv("PROTECTION_OVERRIDE_MULTIPLIER", "10")),
        protection_surcharge_multiplier=Decimal(os.getenv("PROTECTION_SURCHARGE_MULTIPLIER", "4")),
        grid_width=int(os.getenv("GRID_WIDTH", "1000")),
        grid_height=int(os.getenv("GRID_HEIGHT", "1000")),
        max_bulk_cells=int(os.getenv("MAX_BULK_CELLS", "100")),
    )


def get_db_engine(url: str | None = None):
    url = url or DATABASE_URL

    if url.startswith("sqlite"):
        logger.info(f"[DB] Using SQLite URL: {url}")
        return create_engine(url, connect_args={"check_same_thread": False})

    logger.info("[DB] Connecting to Postgres")
    # pg8000 supports 'timeout' in seconds
    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args={"timeout": 10},
    )


def create_session_factory(engine=None) -> sessionmaker:
    engine = engine if engine is not None else get_db_engine()
    # expire_on_commit=False keeps rows readable after the session closes
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
