"""
Seed the products table from a JSON exam catalog.

The catalog is a list of objects with camelCase keys:
    examName, examCode, description, difficultyLevel, questionsCount, price
`price` is in dollars; it is stored as integer cents.

Existing products are replaced unless --append is given.

Run from the backend/ directory:
    python scripts/seed_catalog.py path/to/exams_catalog.json
"""
import argparse
import asyncio
import json
import os
import sys
from decimal import Decimal, ROUND_HALF_UP

# Add backend/ to path so we can import config
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from sqlalchemy import delete

from database import async_session, init_db
from db_models import Product


def product_from_exam(exam: dict) -> Product:
    price_cents = int((Decimal(str(exam["price"])) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return Product(
        exam_name=exam["examName"],
        exam_code=exam.get("examCode"),
        description=exam.get("description"),
        difficulty_level=exam.get("difficultyLevel"),
        questions_count=exam.get("questionsCount"),
        price_cents=price_cents,
        is_active=True,
    )


async def seed(catalog_path: str, append: bool = False) -> int:
    with open(catalog_path, encoding="utf-8") as f:
        catalog = json.load(f)

    await init_db()
    async with async_session() as db:
        if not append:
            # Orders and downloads reference products; only safe on a fresh store
            await db.execute(delete(Product))
        db.add_all(product_from_exam(exam) for exam in catalog)
        await db.commit()
    return len(catalog)


def main():
    parser = argparse.ArgumentParser(description="Seed exam products from a JSON catalog")
    parser.add_argument("catalog", help="Path to the JSON catalog file")
    parser.add_argument("--append", action="store_true", help="Keep existing products")
    args = parser.parse_args()

    print("📚 Seeding database with exam products...")
    count = asyncio.run(seed(args.catalog, append=args.append))
    print(f"✅ Seeded {count} products successfully!")


if __name__ == "__main__":
    main()
