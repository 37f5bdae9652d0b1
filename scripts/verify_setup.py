"""Verify that the setup is correct before running the forecaster."""
import asyncio
import os
import sys
import aiohttp
from dotenv import load_dotenv
from gh_forecast.application.options import resolve_cache_dir
from gh_forecast.domain.errors import AuthenticationError
from gh_forecast.infrastructure.auth import BASE_URL_VARIABLES, TOKEN_VARIABLES, get_auth
from gh_forecast.infrastructure.file_cache import FileCacheStore

# Load environment variables from .env or env file
load_dotenv('.env') or load_dotenv('env')


def check_environment_variables():
    """Report which credential and endpoint variables are set."""
    print("Checking environment variables...")

    found = [var for var in TOKEN_VARIABLES if os.getenv(var)]
    if found:
        print(f"✅ Token variables set: {', '.join(found)}")
    else:
        print("⚠️  No token variable set, will fall back to 'gh auth token'")

    for var in BASE_URL_VARIABLES + ("GH_FORECAST_CONCURRENCY", "GH_FORECAST_CACHE_TTL_MINUTES",
                                     "GH_FORECAST_CACHE_DIR"):
        if os.getenv(var):
            print(f"   {var}: {os.getenv(var)}")

    return True


def check_github_token():
    """Verify a GitHub token can be resolved."""
    print("\nChecking GitHub token...")

    try:
        auth = get_auth(os.getenv("GH_HOST"))
    except AuthenticationError as e:
        print(f"❌ {e}")
        return False

    print("✅ GitHub token resolved")
    print(f"   Token prefix: {auth.token[:10]}...")
    print(f"   API base URL: {auth.base_url}")
    return True


async def _fetch_rate_limit(token: str, base_url: str) -> dict:
    headers = {"Authorization": f"Bearer {token}", "Accept": "application/vnd.github+json"}
    async with aiohttp.ClientSession(headers=headers) as session:
        async with session.get(f"{base_url}/rate_limit") as response:
            response.raise_for_status()
            return await response.json()


def check_api_access():
    """Check the API accepts the token and report the remaining quota."""
    print("\nChecking GitHub API access...")

    try:
        auth = get_auth(os.getenv("GH_HOST"))
        data = asyncio.run(_fetch_rate_limit(auth.token, auth.base_url))
    except (AuthenticationError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        print(f"❌ Failed to reach the GitHub API: {e}")
        return False

    core = data.get("resources", {}).get("core", {})
    print("✅ GitHub API reachable")
    print(f"   Core rate limit: {core.get('remaining', '?')}/{core.get('limit', '?')} remaining")
    return True


def check_cache_directory():
    """Check the cache directory can be written."""
    print("\nChecking cache directory...")

    cache_dir = resolve_cache_dir()
    try:
        cache_dir.mkdir(parents=True, exist_ok=True)
        probe = cache_dir / ".write-test"
        probe.write_text("ok")
        probe.unlink()
    except OSError as e:
        print(f"❌ Cache directory {cache_dir} is not writable: {e}")
        return False

    stats = FileCacheStore(cache_dir).stats()
    print(f"✅ Cache directory writable: {cache_dir}")
    print(f"   Cached files: {stats.count}")
    return True


def main():
    """Run all verification checks."""
    print("=" * 60)
    print("GitHub Actions Forecast - Setup Verification")
    print("=" * 60)

    checks = [
        ("Environment Variables", check_environment_variables),
        ("GitHub Token", check_github_token),
        ("GitHub API Access", check_api_access),
        ("Cache Directory", check_cache_directory),
    ]

    results = {}
    for name, check_func in checks:
        results[name] = check_func()

    print("\n" + "=" * 60)
    print("Verification Summary")
    print("=" * 60)

    for name, passed in results.items():
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"{status}: {name}")

    if all(results.values()):
        print("\n✅ All checks passed! Ready to run the forecast.")
        print("\nNext steps:")
        print("  python forecast_actions.py --org <your-org>")
        sys.exit(0)
    else:
        print("\n❌ Some checks failed. Please fix the issues above.")
        print("\nCommon solutions:")
        print("  - Set GH_TOKEN: export GH_TOKEN=your_token")
        print("  - Log in with the gh CLI: gh auth login")
        print("  - For GHES, set GH_HOST or GH_ENTERPRISE_URL")
        sys.exit(1)


if __name__ == "__main__":
    main()
