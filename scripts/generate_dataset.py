"""
Synthetic Growth Dataset Generator
Writes a raw connector export (Shopify, Meta, Google Ads, GA4) as JSON
"""

import argparse
from datetime import date
from pathlib import Path

from growth_marts.data.generators import DataGenerator, summarize

OUTPUT_DIR = Path(__file__).parent.parent / "data" / "generated"


def main():
    parser = argparse.ArgumentParser(description="Generate a raw growth-marts export")
    parser.add_argument("--customers", type=int, default=500)
    parser.add_argument("--days", type=int, default=90)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--start", type=date.fromisoformat, default=date(2025, 1, 1))
    parser.add_argument("--output", type=Path, default=OUTPUT_DIR / "raw_records.json")
    args = parser.parse_args()

    print("=" * 60)
    print("Growth Marts Dataset Generator")
    print("=" * 60 + "\n")

    generator = DataGenerator(seed=args.seed, start_date=args.start)
    records = generator.generate_all(n_customers=args.customers, days=args.days)
    path = generator.save(records, args.output)

    for key, count in sorted(summarize(records).items()):
        print(f"   {key}: {count:,} records")

    size = path.stat().st_size / 1024 / 1024
    print(f"\nTotal: {len(records):,} records ({size:.2f} MB)")
    print(f"Output: {path}\n")


if __name__ == "__main__":
    main()
