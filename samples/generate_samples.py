#!/usr/bin/env python3
"""
Generate sample data files for trying ontoforge extraction.

This script creates a small content-platform schema in Parquet format plus a
schema.yaml with primary keys and one declared foreign key. The remaining
relationships are left undeclared for discovery, and content_posts.week_number
holds small sequential integers that overlap every auto-increment key.

Usage:
    python samples/generate_samples.py
    ontoforge extract demo --samples samples/output --no_llm
"""

import random
from datetime import datetime
from pathlib import Path

import numpy as np
import pandas as pd
import yaml
from faker import Faker

# Initialize Faker with seed for reproducibility
fake = Faker()
Faker.seed(42)
random.seed(42)
rng = np.random.default_rng(42)

# Output directory
OUTPUT_DIR = Path(__file__).parent / "output"


def generate_users(n: int = 200) -> pd.DataFrame:
    """Generate platform users."""
    return pd.DataFrame({
        "user_id": np.arange(1, n + 1),
        "username": [fake.unique.user_name() for _ in range(n)],
        "email": [fake.unique.email() for _ in range(n)],
        "signup_date": [
            datetime.combine(fake.date_between(start_date="-5y", end_date="-1m"), datetime.min.time())
            for _ in range(n)
        ],
        "is_verified": rng.random(n) < 0.7,
    })


def generate_categories() -> pd.DataFrame:
    """Generate reference data for content categories."""
    names = [
        "News", "Sports", "Technology", "Travel", "Food", "Music",
        "Film", "Science", "Health", "Finance", "Gaming", "Education",
    ]
    return pd.DataFrame({
        "category_id": np.arange(1, len(names) + 1),
        "category_name": names,
        "slug": [n.lower() for n in names],
    })


def generate_regions() -> pd.DataFrame:
    """Generate reference data for audience regions."""
    names = ["North America", "South America", "Europe", "Africa", "Middle East", "Asia", "Oceania", "Antarctica"]
    return pd.DataFrame({
        "region_id": np.arange(1, len(names) + 1),
        "region_name": names,
    })


def generate_tags(n: int = 40) -> pd.DataFrame:
    """Generate free-form tags."""
    return pd.DataFrame({
        "tag_id": np.arange(1, n + 1),
        "label": [fake.unique.word() for _ in range(n)],
    })


def generate_content_posts(users_df: pd.DataFrame, categories_df: pd.DataFrame, n: int = 600) -> pd.DataFrame:
    """Generate posts. week_number is an ordinal, not a reference."""
    return pd.DataFrame({
        "post_id": np.arange(1, n + 1),
        "author_id": rng.choice(users_df["user_id"].to_numpy(), size=n),
        "category_id": rng.choice(categories_df["category_id"].to_numpy(), size=n),
        "title": [fake.sentence(nb_words=6).rstrip(".") for _ in range(n)],
        "week_number": rng.integers(1, 11, size=n),
        "view_count": rng.poisson(lam=350, size=n),
        "published_at": [fake.date_time_between(start_date="-1y", end_date="now") for _ in range(n)],
    })


def generate_comments(posts_df: pd.DataFrame, users_df: pd.DataFrame, n: int = 2500) -> pd.DataFrame:
    """Generate comments on posts."""
    return pd.DataFrame({
        "comment_id": np.arange(1, n + 1),
        "post_id": rng.choice(posts_df["post_id"].to_numpy(), size=n),
        "commenter_id": rng.choice(users_df["user_id"].to_numpy(), size=n),
        "body": [fake.sentence(nb_words=12) for _ in range(n)],
        "created_at": [fake.date_time_between(start_date="-1y", end_date="now") for _ in range(n)],
    })


SCHEMA = {
    "tables": {
        "users": {"primary_key": ["user_id"]},
        "categories": {"primary_key": ["category_id"]},
        "regions": {"primary_key": ["region_id"]},
        "tags": {"primary_key": ["tag_id"]},
        "content_posts": {"primary_key": ["post_id"]},
        "comments": {"primary_key": ["comment_id"]},
    },
    "foreign_keys": [
        {"source": "content_posts.category_id", "target": "categories.category_id"},
    ],
}


def main():
    """Generate all sample data files."""
    print("Generating sample data for ontoforge...")
    OUTPUT_DIR.mkdir(parents=True, exist_ok=True)

    users_df = generate_users()
    categories_df = generate_categories()
    posts_df = generate_content_posts(users_df, categories_df)

    frames = {
        "users": users_df,
        "categories": categories_df,
        "regions": generate_regions(),
        "tags": generate_tags(),
        "content_posts": posts_df,
        "comments": generate_comments(posts_df, users_df),
    }

    for name, df in frames.items():
        print(f"  - {name}")
        df.to_parquet(OUTPUT_DIR / f"{name}.parquet", index=False)

    with open(OUTPUT_DIR / "schema.yaml", "w") as f:
        yaml.safe_dump(SCHEMA, f, sort_keys=False)

    print(f"\nGenerated sample files in: {OUTPUT_DIR}")
    print("\nSummary:")
    for name, df in frames.items():
        print(f"  - {name}: {len(df)} rows")


if __name__ == "__main__":
    main()
