"""Query and display statistics about the forecast cache."""
import argparse
import sys
from dotenv import load_dotenv
from gh_forecast.application.options import resolve_cache_dir
from gh_forecast.infrastructure.file_cache import FileCacheStore
from gh_forecast.presentation.report import format_bytes

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


def print_section(title: str):
    """Print a section header."""
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def format_age(age_ms: int) -> str:
    minutes = age_ms // 60000
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h {minutes % 60}m"


def display_statistics(cache: FileCacheStore):
    """Display statistics about the cached fetch results."""
    stats = cache.stats()

    print_section("Cache Statistics")
    print(f"Cache directory: {cache.cache_dir}")
    print(f"Cached files: {stats.count:,}")
    print(f"Total size: {format_bytes(stats.bytes)}")
    if stats.oldest_age_ms is not None:
        print(f"Oldest entry: {format_age(stats.oldest_age_ms)} old")

    if stats.count:
        print_section("Largest Entries")
        entries = sorted(cache.cache_dir.glob("*.json"), key=lambda p: p.stat().st_size, reverse=True)
        print(f"{'File':<40} {'Size':>15}")
        print("-" * 60)
        for path in entries[:10]:
            print(f"{path.name:<40} {format_bytes(path.stat().st_size):>15}")


def main():
    parser = argparse.ArgumentParser(description="Inspect or clear the gh-forecast cache")
    parser.add_argument("--clear", action="store_true", help="Delete all cached entries")
    args = parser.parse_args()

    cache = FileCacheStore(resolve_cache_dir())
    display_statistics(cache)

    if args.clear:
        result = cache.clear()
        print_section("Cache Cleared")
        print(f"Deleted {result.count:,} files ({format_bytes(result.bytes)} freed)")


if __name__ == "__main__":
    try:
        main()
    except OSError as e:
        print(f"Error: {e}")
        sys.exit(1)
