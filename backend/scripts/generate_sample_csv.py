"""
Write a sample contacts CSV for exercising the import endpoints.

Rows carry a city/state/country but no coordinates, so every row goes
through the geocoder (or the background sweep).

Usage:
  cd backend
  python scripts/generate_sample_csv.py --rows 5000 --out sample_contacts.csv
"""

import argparse
import csv
import random
import sys
from pathlib import Path

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from contact_import import FIELD_ALIASES  # noqa: E402
from scripts.seed_cities import US_CITIES  # noqa: E402

FIRST_NAMES = ["jane", "john", "maria", "wei", "amir", "olivia", "liam", "sofia", "noah", "ava"]
LAST_NAMES = ["doe", "smith", "garcia", "chen", "khan", "brown", "lee", "martin", "lopez", "clark"]
POSITIONS = ["Engineer", "Founder", "Designer", "Product Manager", "Recruiter", "Investor"]
TAGS = ["friend", "investor", "alumni", "conference", "client"]

HEADER = [
    "firstName", "lastName", "email", "position", "company",
    "city", "state", "country", "latitude", "longitude", "tags",
]


def build_rows(count: int, seed: int = 42) -> list[list[str]]:
    rng = random.Random(seed)
    rows = []
    for i in range(count):
        first, last = rng.choice(FIRST_NAMES), rng.choice(LAST_NAMES)
        city, state, *_ = rng.choice(US_CITIES)
        rows.append([
            first,
            last,
            f"{first}.{last}.{i}@example.com",
            rng.choice(POSITIONS),
            f"{last.title()} & Co",
            city,
            state,
            "US",
            "",
            "",
            "; ".join(rng.sample(TAGS, k=2)),
        ])
    return rows


def main():
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("--rows", type=int, default=1000)
    parser.add_argument("--out", default="sample_contacts.csv")
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args()

    # Headers must be ones the importer recognizes
    known = {alias for aliases in FIELD_ALIASES.values() for alias in aliases}
    assert all(h.lower() in known for h in HEADER)

    with open(args.out, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(HEADER)
        writer.writerows(build_rows(args.rows, args.seed))
    print(f"Wrote {args.rows} rows to {args.out}")


if __name__ == "__main__":
    main()
