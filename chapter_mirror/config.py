"""YAML config loader."""

import os
from dataclasses import dataclass, field
from typing import Dict, List

import yaml


@dataclass
class DownloadConfig:
    timeout: int = 30
    user_agent: str = (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )
    asset_user_agent: str = "ChapterMirror/1.0 (Offline Reader; asset fetch)"
    max_concurrency: int = 10
    max_parallel_jobs: int = 5
    max_asset_size: int = 20 * 1024 * 1024  # 20MB
    wait_for_each: bool = False
    probe_host: str = "1.1.1.1"
    probe_port: int = 53
    probe_timeout: float = 3.0


@dataclass
class ResilienceConfig:
    max_requests_per_second: int = 5
    max_retries: int = 3
    base_delay: float = 0.5
    cap_delay: float = 5.0
    dedup_ttl: float = 5.0
    dedup_cleanup_delay: float = 1.0
    challenge_timeout: float = 12.0
    challenge_enabled: bool = True


@dataclass
class SiteConfig:
    content_selector: str = ""
    remove_selectors: List[str] = field(default_factory=list)
    prepend_title: bool = True
    remove_directional_links: bool = False


@dataclass
class AppConfig:
    data_dir: str = "data"
    db_path: str = "chapters.db"
    log_dir: str = "logs"
    download: DownloadConfig = field(default_factory=DownloadConfig)
    resilience: ResilienceConfig = field(default_factory=ResilienceConfig)
    sites: Dict[str, SiteConfig] = field(default_factory=dict)


def load_config(config_path: str = "config.yaml") -> AppConfig:
    if not os.path.exists(config_path):
        return AppConfig()

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    dl_raw = raw.get("download", {})
    download = DownloadConfig(**{k: v for k, v in dl_raw.items() if k in DownloadConfig.__dataclass_fields__})

    rs_raw = raw.get("resilience", {})
    resilience = ResilienceConfig(**{k: v for k, v in rs_raw.items() if k in ResilienceConfig.__dataclass_fields__})

    sites = {}
    for host, site_raw in (raw.get("sites") or {}).items():
        sites[host] = SiteConfig(**{k: v for k, v in site_raw.items() if k in SiteConfig.__dataclass_fields__})

    return AppConfig(
        data_dir=raw.get("data_dir", "data"),
        db_path=raw.get("db_path", "chapters.db"),
        log_dir=raw.get("log_dir", "logs"),
        download=download,
        resilience=resilience,
        sites=sites,
    )
