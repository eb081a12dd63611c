#!/usr/bin/env python3
"""
Interactive session setup.
Logs in via Playwright in a real browser and stores the Instagram cookies as
a session file that IGContext.load_session() understands.
"""

import argparse
import asyncio
from pathlib import Path
from typing import Dict, List, Optional

from playwright.async_api import async_playwright

from config_loader import ConfigLoader
from ig_context import IGContext
from ig_storage import default_session_filename, save_session_to_file

SESSION_COOKIES = ["sessionid", "csrftoken", "ds_user_id", "mid", "ig_did", "rur"]


def cookies_to_session(cookies: List[dict]) -> Dict[str, str]:
    cookie_map = {}
    for cookie in cookies:
        domain = str(cookie.get("domain", ""))
        if not domain.endswith("instagram.com"):
            continue
        if cookie.get("name") and cookie.get("value") is not None:
            cookie_map[cookie["name"]] = cookie["value"]
    return cookie_map


def missing_session_cookies(cookie_map: Dict[str, str]) -> List[str]:
    return [name for name in ["sessionid", "csrftoken", "ds_user_id"] if not cookie_map.get(name)]


def build_context(cookie_map: Dict[str, str], loader: ConfigLoader, username: Optional[str]) -> IGContext:
    context = IGContext.from_config(loader)
    context.load_session(username, cookie_map)
    return context


async def capture_cookies(user_data_dir: Path) -> List[dict]:
    async with async_playwright() as p:
        browser_context = await p.chromium.launch_persistent_context(
            user_data_dir=str(user_data_dir),
            headless=False,
            args=["--disable-blink-features=AutomationControlled"],
        )
        page = browser_context.pages[0] if browser_context.pages else await browser_context.new_page()
        await page.goto("https://www.instagram.com/accounts/login/")

        print("\nActions:")
        print("1) Log in (complete 2FA or checkpoints in the browser)")
        print("2) Wait until your feed is shown, then press Ctrl+C")

        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            pass
        finally:
            cookies = await browser_context.cookies()
            await browser_context.close()
    return cookies


async def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--username", required=True, help="Instagram username the session belongs to")
    parser.add_argument("--config", default="config.json", help="Config file path")
    parser.add_argument("--session-file", default=None, help="Where to store the session")
    args = parser.parse_args()

    loader = ConfigLoader(config_file=args.config)
    data_dir = Path(loader.get("instagram.storage.data_dir", "crawler_data"))

    cookies = await capture_cookies(data_dir / "browser_data")
    cookie_map = {k: v for k, v in cookies_to_session(cookies).items() if k in SESSION_COOKIES}
    missing = missing_session_cookies(cookie_map)
    if missing:
        print("Missing required cookies: " + ", ".join(missing))
        return 1

    context = build_context(cookie_map, loader, args.username)
    try:
        logged_in_as = context.test_login()
        if logged_in_as and logged_in_as != args.username:
            print(f"Warning: cookies belong to {logged_in_as}, not {args.username}")
        session_path = save_session_to_file(
            context, args.session_file or default_session_filename(args.username, data_dir)
        )
    finally:
        context.close()

    print(f"Session saved: {session_path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))
