from __future__ import annotations

from datetime import datetime, timezone
from uuid import UUID

DEFAULT_DOI_PREFIX = "10.5555"


def generate_local_doi(*, manuscript_id: str | UUID, prefix: str | None = None) -> str:
    """
    出版流程的本地 DOI（未向 Crossref 注册）

    规则:
    - 格式: {prefix}/{year}.{id 前 8 位}
    - prefix 缺省为 10.5555
    """
    year = datetime.now(timezone.utc).year
    short = str(manuscript_id)[:8]
    if not short:
        short = "unknown"
    return f"{(prefix or DEFAULT_DOI_PREFIX).strip()}/{year}.{short}"
