from __future__ import annotations

import logging
from datetime import datetime, timezone

from botflow.core.doi_generator import generate_local_doi
from botflow.core.errors import WorkflowValidationError
from botflow.models.actions import ActionContext, ExecutePublicationWorkflowData
from botflow.models.manuscript import ManuscriptStatus
from botflow.services.bot_actions.common import (
    ActionServices,
    editorial_conversation_id,
    manuscript_url,
    now_label,
    post_note,
    today_label,
)
from botflow.services.effects import Broadcast, Effect, SendEmail

logger = logging.getLogger("bot_actions")


async def handle_execute_publication_workflow(
    data: ExecutePublicationWorkflowData, ctx: ActionContext, *, services: ActionServices
) -> None:
    """
    EXECUTE_PUBLICATION_WORKFLOW：ACCEPTED -> PUBLISHED。

    中文注释:
    - DOI：沿用已有；否则按 {prefix}/{year}.{id 前 8 位} 生成本地 DOI。
    - 状态经状态机写入，由状态机返回 PublishAssets effect（资源发布失败不阻断出版）。
    """

    manuscript_id = data.manuscript_id or ctx.manuscript_id
    manuscript = services.state_machine.get_manuscript(manuscript_id)
    current = str(manuscript.get("status") or "").upper()
    if current != ManuscriptStatus.ACCEPTED.value:
        raise WorkflowValidationError(
            f"Cannot execute publication workflow. Manuscript status is {current or 'UNKNOWN'}, expected ACCEPTED"
        )

    title = manuscript.get("title") or "Manuscript"
    doi = manuscript.get("doi") or generate_local_doi(
        manuscript_id=manuscript_id, prefix=services.crossref.doi_prefix
    )
    published_at = datetime.now(timezone.utc).isoformat()

    change = services.state_machine.transition_status(
        manuscript_id=manuscript_id,
        requested=ManuscriptStatus.PUBLISHED.value,
        changed_by=ctx.user_id,
        comment=data.reason or "publication workflow",
        extra_updates={"published_at": published_at, "doi": doi},
    )

    triggered_by = data.triggered_by or ctx.user_id
    content = (
        "🚀 **Publication Workflow Completed**\n\n"
        f"**Manuscript:** {title}\n"
        f"**DOI:** {doi}\n"
        f"**Published:** {now_label()}\n"
        f"**Triggered by:** {triggered_by}\n"
        + (f"**Acceptance reason:** {data.reason}\n" if data.reason else "")
        + "\n✅ **Manuscript is now published and publicly available**"
    )
    post_note(
        services,
        conversation_id=editorial_conversation_id(services, manuscript_id),
        author_id=ctx.user_id,
        content=content,
        metadata={
            "type": "publication_workflow_completed",
            "doi": doi,
            "publishedAt": published_at,
            "triggeredBy": triggered_by,
            "reason": data.reason,
            "via": "bot",
        },
    )

    effects: list[Effect] = list(change.effects)
    for email in services.users.get_author_emails(manuscript_id):
        effects.append(
            SendEmail(
                to_email=email,
                subject=f"Published: {title}",
                template_name="publication_notice.html",
                context={
                    "manuscript_title": title,
                    "doi": doi,
                    "published_date": today_label(),
                    "article_url": manuscript_url(manuscript_id),
                },
                manuscript_id=manuscript_id,
            )
        )
    effects.append(
        Broadcast(
            conversation_id=ctx.conversation_id,
            manuscript_id=manuscript_id,
            event={
                "type": "manuscript-published",
                "manuscript": {
                    "id": manuscript_id,
                    "title": title,
                    "doi": doi,
                    "publishedAt": published_at,
                    "status": ManuscriptStatus.PUBLISHED.value,
                },
            },
        )
    )
    await services.effects.drain(effects)
    logger.info("Publication workflow completed for manuscript %s. DOI: %s", manuscript_id, doi)
