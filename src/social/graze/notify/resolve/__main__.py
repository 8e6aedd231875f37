from typing import List
import argparse
import aiohttp
import asyncio
import logging

from social.graze.notify.resolve.did import resolve_did

logger = logging.getLogger(__name__)


async def realMain() -> None:
    parser = argparse.ArgumentParser(prog="resolve", description="Resolve DIDs")
    parser.add_argument("subject", nargs="+", help="The DID(s) to resolve.")
    parser.add_argument(
        "--plc-hostname",
        default="plc.directory",
        help="The PLC hostname to use for resolving did-method-plc DIDs.",
    )
    parser.add_argument(
        "--timeout", type=float, default=10.0, help="Request timeout in seconds."
    )

    args = vars(parser.parse_args())

    subjects: List[str] = args.get("subject", [])

    async with aiohttp.ClientSession() as session:
        for subject in subjects:
            try:
                resolved = await resolve_did(
                    session, args["plc_hostname"], subject, timeout=args["timeout"]
                )
            except (aiohttp.ClientError, asyncio.TimeoutError):
                logger.exception("Exception resolving subject %s", subject)
                continue

            if resolved is None:
                print(f"unresolved {subject}")
            else:
                print(f"resolved {resolved.did} {resolved.handle} {resolved.pds}")


def main() -> None:
    logging.basicConfig()
    asyncio.run(realMain())


if __name__ == "__main__":
    main()
