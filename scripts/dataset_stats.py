#!/usr/bin/env python3
"""
Display statistics for crawled job datasets.

This script reads JSON Lines outputs (default: outs/*.jsonl) and shows:
- Total records per file
- How many came from job pages versus listing data only
- Field fill rates
- Aggregate totals across all files, plus the run summary if one was written
"""

import json
import sys
from pathlib import Path

import pandas as pd

# Fields that only a job page can provide
DETAIL_ONLY_FIELDS = ['job_type', 'job_category']


def get_dataset_stats(dataset_path):
    """Extract statistics from a single JSON Lines output."""
    df = pd.read_json(dataset_path, lines=True)
    if df.empty:
        return {'total': 0, 'detailed': 0, 'listing_only': 0, 'fill': pd.Series(dtype=float)}

    detail_cols = [c for c in DETAIL_ONLY_FIELDS if c in df.columns]
    detailed = int(df[detail_cols].notna().any(axis=1).sum()) if detail_cols else 0

    return {
        'total': len(df),
        'detailed': detailed,
        'listing_only': len(df) - detailed,
        'fill': df.notna().mean().sort_values(ascending=False),
    }


def main():
    """Display dataset statistics for all JSON Lines files."""
    out_dir = Path(sys.argv[1]) if len(sys.argv) > 1 else Path('outs')
    datasets = sorted(out_dir.glob('*.jsonl'))

    if not datasets:
        print(f"No datasets found in {out_dir}/")
        return

    totals = {'total': 0, 'detailed': 0, 'listing_only': 0}

    for dataset in datasets:
        stats = get_dataset_stats(dataset)

        print(f"{dataset.name}:")
        print(f"  Total: {stats['total']:5d} | From job pages: {stats['detailed']:5d} | "
              f"Listing only: {stats['listing_only']:4d}")
        for field, rate in stats['fill'].items():
            print(f"    {field:<18} {rate:6.1%}")

        summary_file = dataset.with_name(f"{dataset.stem}.summary.json")
        if summary_file.exists():
            with open(summary_file) as f:
                summary = json.load(f)
            print(f"  Last run: {summary.get('status')} ({summary.get('stop_reason')}), "
                  f"{summary.get('pages_visited')} pages, {summary.get('failed_url_count')} failed URLs, "
                  f"{summary.get('blocked_responses')} blocked")
        print()

        for key in totals:
            totals[key] += stats[key]

    print("=" * 70)
    print("TOTALS:")
    print(f"  Total: {totals['total']:5d} | From job pages: {totals['detailed']:5d} | "
          f"Listing only: {totals['listing_only']:4d}")


if __name__ == '__main__':
    main()
