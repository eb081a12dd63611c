#!/usr/bin/env python3
"""
Config loader for the Instagram query engine.
Priority: .env > config.json > defaults.
"""

import json
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

TRUE_VALUES = {"1", "true", "yes", "on"}


def env_flag(name: str):
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return value.strip().lower() in TRUE_VALUES


class ConfigLoader:
    def __init__(self, config_file: str = "config.json"):
        self.config_file = Path(config_file)
        self.config = self._load_config()

    def _load_config(self):
        config = {
            "instagram": {
                "settings": {
                    "sleep": True,
                    "quiet": False,
                    "user_agent": None,
                    "max_connection_attempts": 3,
                    "request_timeout": 300.0,
                    "fatal_status_codes": [],
                    "iphone_support": True,
                    "resume_prefix": "iterator",
                    "check_resume_bbd": True,
                },
                "storage": {
                    "data_dir": "crawler_data",
                },
                "proxy": {
                    "http": None,
                    "https": None,
                },
            }
        }

        if self.config_file.exists():
            with open(self.config_file, "r", encoding="utf-8") as file:
                json_config = json.load(file)
                self._deep_update(config, json_config)

        ig = config["instagram"]
        settings = ig["settings"]

        # Settings overrides
        for name, key in [("IG_SLEEP", "sleep"), ("IG_QUIET", "quiet"), ("IG_IPHONE_SUPPORT", "iphone_support"),
                          ("IG_CHECK_RESUME_BBD", "check_resume_bbd")]:
            flag = env_flag(name)
            if flag is not None:
                settings[key] = flag
        if os.getenv("IG_USER_AGENT"):
            settings["user_agent"] = os.getenv("IG_USER_AGENT")
        if os.getenv("IG_MAX_CONNECTION_ATTEMPTS"):
            settings["max_connection_attempts"] = int(os.getenv("IG_MAX_CONNECTION_ATTEMPTS"))
        if os.getenv("IG_REQUEST_TIMEOUT"):
            settings["request_timeout"] = float(os.getenv("IG_REQUEST_TIMEOUT"))
        if os.getenv("IG_FATAL_STATUS_CODES"):
            settings["fatal_status_codes"] = [
                int(code) for code in os.getenv("IG_FATAL_STATUS_CODES").split(",") if code.strip()
            ]
        if os.getenv("IG_RESUME_PREFIX"):
            settings["resume_prefix"] = os.getenv("IG_RESUME_PREFIX")

        # Proxy overrides
        if os.getenv("HTTP_PROXY"):
            ig["proxy"]["http"] = os.getenv("HTTP_PROXY")
        if os.getenv("HTTPS_PROXY"):
            ig["proxy"]["https"] = os.getenv("HTTPS_PROXY")

        # Storage overrides
        if os.getenv("DATA_DIR"):
            ig["storage"]["data_dir"] = os.getenv("DATA_DIR")

        return config

    def _deep_update(self, base, update):
        for key, value in update.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_update(base[key], value)
            else:
                base[key] = value

    def get(self, key_path, default=None):
        keys = key_path.split(".")
        value = self.config
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def save_to_json(self, output_file=None):
        output_file = output_file or self.config_file
        with open(output_file, "w", encoding="utf-8") as file:
            json.dump(self.config, file, ensure_ascii=False, indent=2)
        print(f"Config saved: {output_file}")

    def get_proxy_settings(self):
        proxy = self.config.get("instagram", {}).get("proxy", {})
        if proxy.get("http") or proxy.get("https"):
            return {
                "http": proxy.get("http"),
                "https": proxy.get("https"),
            }
        return None

    def validate(self):
        settings = self.config.get("instagram", {}).get("settings", {})
        problems = []
        if int(settings.get("max_connection_attempts") or 0) < 1:
            problems.append("max_connection_attempts must be at least 1")
        if float(settings.get("request_timeout") or 0) <= 0:
            problems.append("request_timeout must be positive")
        for problem in problems:
            print(f"Invalid setting: {problem}")
        return not problems
