#!/usr/bin/env python3
"""
Seed a demo business with template responses, context sections and FAQs.

Creates the schema if needed, then inserts one business and its content so
the testing endpoints have something to ground answers on.

Usage:
    python scripts/seed_demo_business.py                 # Seed demo car wash
    python scripts/seed_demo_business.py --name "Acme"   # Custom company name
    python scripts/seed_demo_business.py --dry-run       # Print content only
"""
import asyncio
import os
import sys
import argparse
from pathlib import Path

import asyncpg
from dotenv import load_dotenv

from services.database import create_tables

load_dotenv(Path(__file__).parent.parent / ".env")

DATABASE_URL = os.getenv("DATABASE_URL")

TEMPLATE_RESPONSES = [
    {
        "section_key": "pricing",
        "content": (
            "Our prices start at 40 dollars for a basic wash and premium packages "
            "cost 90 dollars. Contact us to book a visit today."
        ),
    },
    {
        "section_key": "hours",
        "content": (
            "We are open Monday to Saturday from 8 am to 6 pm. "
            "On Sundays we are open from 10 am to 4 pm."
        ),
    },
]

CONTEXT_SECTIONS = [
    {
        "section_key": "location",
        "section_name": "Location",
        "section_type": "contact",
        "content": "You can find us at 12 Harbour Road, next to the central station. Free parking is available.",
    },
    {
        "section_key": "services",
        "section_name": "Services",
        "section_type": "services",
        "content": (
            "We offer exterior washing, interior cleaning, waxing and ceramic coating "
            "for cars, vans and motorcycles."
        ),
    },
]

FAQ_ITEMS = [
    {
        "question": "Do I need an appointment?",
        "answer": "Walk-ins are welcome, but booking an appointment guarantees your slot.",
        "category": "booking",
    },
    {
        "question": "Which payment methods do you accept?",
        "answer": "We accept cash, all major credit cards and mobile payments.",
        "category": "payment",
    },
]


async def seed(name: str, business_type: str, language: str) -> int:
    """Insert the demo business and its content. Returns the business id."""
    pool = await asyncpg.create_pool(DATABASE_URL, min_size=1, max_size=1)
    try:
        await create_tables(pool)

        async with pool.acquire() as conn, conn.transaction():
            business_id = await conn.fetchval(
                """
                INSERT INTO businesses (company_name, business_type, confidence_threshold)
                VALUES ($1, $2, $3)
                RETURNING id
                """,
                name, business_type, 0.7,
            )

            for item in TEMPLATE_RESPONSES:
                await conn.execute(
                    """
                    INSERT INTO business_template_responses (
                        business_id, section_key, language_code, content,
                        completion_status, character_count, word_count
                    )
                    VALUES ($1, $2, $3, $4, 'completed', $5, $6)
                    """,
                    business_id, item["section_key"], language, item["content"],
                    len(item["content"]), len(item["content"].split()),
                )

            for item in CONTEXT_SECTIONS:
                await conn.execute(
                    """
                    INSERT INTO business_context_sections (
                        business_id, section_key, section_name, section_type,
                        language_code, content, character_count, word_count
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    """,
                    business_id, item["section_key"], item["section_name"], item["section_type"],
                    language, item["content"], len(item["content"]), len(item["content"].split()),
                )

            for item in FAQ_ITEMS:
                await conn.execute(
                    """
                    INSERT INTO faq_items (business_id, language_code, question, answer, category)
                    VALUES ($1, $2, $3, $4, $5)
                    """,
                    business_id, language, item["question"], item["answer"], item["category"],
                )
    finally:
        await pool.close()

    return business_id


def print_content(name: str):
    print(f"Demo business: {name}")
    print("=" * 60)
    for item in TEMPLATE_RESPONSES:
        print(f"\n[template] {item['section_key']}: {item['content']}")
    for item in CONTEXT_SECTIONS:
        print(f"\n[section] {item['section_name']}: {item['content']}")
    for item in FAQ_ITEMS:
        print(f"\n[faq] {item['question']}\n      {item['answer']}")


def main():
    parser = argparse.ArgumentParser(description="Seed a demo business for chatbot testing")
    parser.add_argument("--name", default="Harbour Car Wash", help="Company name")
    parser.add_argument("--type", dest="business_type", default="car_wash", help="Business type")
    parser.add_argument("--language", default="en", help="Language code for the content")
    parser.add_argument("--dry-run", action="store_true", help="Print content without writing")
    args = parser.parse_args()

    if args.dry_run:
        print_content(args.name)
        return

    if not DATABASE_URL:
        print("Error: DATABASE_URL not set")
        sys.exit(1)

    business_id = asyncio.run(seed(args.name, args.business_type, args.language))
    print(f"✅ Seeded '{args.name}' as business {business_id}")
    print(f"   Templates: {len(TEMPLATE_RESPONSES)}")
    print(f"   Sections:  {len(CONTEXT_SECTIONS)}")
    print(f"   FAQs:      {len(FAQ_ITEMS)}")


if __name__ == "__main__":
    main()
