"""Convenience runner for the average-load profile against the Bookinfo product page."""

import argparse
import asyncio
import sys

from ramp_core import RampConfig, Run, setup_logging
from ramp_schedule import Stage

DEFAULT_URL = "http://172.19.255.201/productpage"


def build_config(url: str = DEFAULT_URL) -> RampConfig:
    return RampConfig(
        name="average-load",
        target={"url": url, "method": "GET"},
        stages=[
            Stage(duration="2m", target=100),  # ramp up to 100 users
            Stage(duration="5m", target=200),  # climb to 200 users
            Stage(duration="2m", target=100),  # ramp back down to 100 users
        ],
        summary_interval=60,
    )


async def main(url: str) -> int:
    setup_logging("INFO")
    result = await Run(build_config(url), handle_signals=True).run()
    return result.exit_code


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Run the average-load ramp profile")
    parser.add_argument("--url", default=DEFAULT_URL, help="Target URL")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.url)))
