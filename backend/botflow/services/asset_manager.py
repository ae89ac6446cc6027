from __future__ import annotations

import logging
from dataclasses import dataclass, field

from botflow.lib.api_client import supabase_admin

logger = logging.getLogger("asset_manager")

MANUSCRIPT_FILES_BUCKET = "manuscripts"
PUBLISHED_ASSETS_BUCKET = "published-assets"
ASSET_FILE_TYPE = "ASSET"


@dataclass
class AssetPublishReport:
    manuscript_id: str
    published: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


class PublishedAssetManager:
    """
    稿件静态资源发布（ASSET 文件 -> 公开 bucket）。

    中文注释:
    - publish: 把稿件所有 file_type=ASSET 的文件从私有 bucket 复制到 published-assets/<manuscript_id>/<原文件名>。
    - unpublish: 删除 published-assets/<manuscript_id>/ 前缀下的全部对象。
    - 单个文件下载失败只记 missing，不中断其它文件；整体失败由调用方（EffectDispatcher）记录。
    """

    def __init__(self, client=None, *, source_bucket: str = MANUSCRIPT_FILES_BUCKET):
        self.client = client or supabase_admin
        self.source_bucket = source_bucket

    def _ensure_public_bucket(self) -> None:
        storage = getattr(self.client, "storage", None)
        if storage is None or not hasattr(storage, "get_bucket") or not hasattr(storage, "create_bucket"):
            return
        try:
            storage.get_bucket(PUBLISHED_ASSETS_BUCKET)
            return
        except Exception:
            pass
        try:
            storage.create_bucket(PUBLISHED_ASSETS_BUCKET, options={"public": True})
        except Exception as e:
            text = str(e).lower()
            if "already" in text or "exists" in text or "duplicate" in text:
                return
            raise

    def _list_assets(self, manuscript_id: str) -> list[dict]:
        resp = (
            self.client.table("manuscript_files")
            .select("id, original_name, storage_path, mime_type")
            .eq("manuscript_id", manuscript_id)
            .eq("file_type", ASSET_FILE_TYPE)
            .execute()
        )
        return getattr(resp, "data", None) or []

    def publish(self, manuscript_id: str) -> AssetPublishReport:
        report = AssetPublishReport(manuscript_id=manuscript_id)
        assets = self._list_assets(manuscript_id)
        logger.info("Publishing %s asset(s) for manuscript %s", len(assets), manuscript_id)
        if not assets:
            return report

        self._ensure_public_bucket()
        source = self.client.storage.from_(self.source_bucket)
        target = self.client.storage.from_(PUBLISHED_ASSETS_BUCKET)
        for asset in assets:
            name = str(asset.get("original_name") or "").strip()
            path = str(asset.get("storage_path") or "").strip()
            if not name or not path:
                report.missing.append(name or str(asset.get("id")))
                continue
            try:
                content = source.download(path)
            except Exception as e:
                logger.warning("Asset file not found: %s (%s)", path, e)
                report.missing.append(name)
                continue
            # storage3 期望 header value 为字符串
            opts = {
                "content-type": str(asset.get("mime_type") or "application/octet-stream"),
                "upsert": "true",
            }
            target.upload(f"{manuscript_id}/{name}", content, opts)
            report.published.append(name)
        return report

    def unpublish(self, manuscript_id: str) -> int:
        bucket = self.client.storage.from_(PUBLISHED_ASSETS_BUCKET)
        listed = bucket.list(manuscript_id) or []
        paths = [f"{manuscript_id}/{item.get('name')}" for item in listed if item.get("name")]
        if paths:
            bucket.remove(paths)
        logger.info("Removed %s published asset(s) for manuscript %s", len(paths), manuscript_id)
        return len(paths)
