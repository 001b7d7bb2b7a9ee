"""Document approval walkthrough for sagaflow.

Starts a persistent workflow that waits for a reviewer, delivers the
approval signal and prints the stored history. Pass a SQLite path as the
first argument to keep state on disk between runs.
"""

import asyncio
import sys
from typing import List

from pydantic import BaseModel

from sagaflow import (
    CallbackNotificationService,
    DefinitionRegistry,
    PersistentWorkflowEngine,
    WorkflowBuilder,
    approval_handler,
    step,
)
from sagaflow.persistence import InMemoryWorkflowStateRepository, SQLiteWorkflowRepository


class DocumentReview(BaseModel):
    document_id: str
    author: str
    reviewers: List[str] = []
    published: bool = False
    archived_draft: bool = False
    reviewed_by: str = ""


def unarchive(ctx: DocumentReview) -> None:
    ctx.archived_draft = False


@step("archive_draft", compensate=unarchive, already_applied=lambda ctx: ctx.archived_draft)
def archive_draft(ctx: DocumentReview) -> None:
    ctx.archived_draft = True


@step("notify_reviewers")
async def notify_reviewers(ctx: DocumentReview) -> None:
    for reviewer in ctx.reviewers:
        print(f"📨 {reviewer}: please review {ctx.document_id}")


@step("publish")
def publish(ctx: DocumentReview) -> None:
    ctx.published = True


def record_reviewer(ctx: DocumentReview, response) -> None:
    ctx.reviewed_by = response.approved_by


document_approval = (
    WorkflowBuilder("document_approval", "Document approval")
    .start_with(archive_draft)
    .then(notify_reviewers)
    .wait_for_approval(
        "approval_document", timeout=3 * 24 * 3600, on_signal=approval_handler(record_reviewer)
    )
    .then(publish)
    .build()
)


def on_completed(state, result) -> None:
    print(f"✅ {state.workflow_instance_id} completed")
    if result.metrics:
        print(f"   {result.metrics.to_summary_string()}")


def on_error(state, message, exception) -> None:
    print(f"❌ {state.workflow_instance_id}: {message}")


async def main(db_path: str = "") -> None:
    repository = SQLiteWorkflowRepository(db_path) if db_path else InMemoryWorkflowStateRepository()
    registry = DefinitionRegistry()
    registry.register(document_approval, DocumentReview)
    engine = PersistentWorkflowEngine(
        repository,
        registry,
        notification_service=CallbackNotificationService(on_completed, on_error),
    )

    context = DocumentReview(document_id="handbook-v2", author="mira", reviewers=["lee", "sam"])
    started = await engine.start_persistent_workflow(document_approval, context)
    print(f"🚀 Started {started.workflow_instance_id}: {started.status.value}")
    print(f"   waiting for '{started.waiting_for_signal}' until {started.signal_timeout_at}")

    delivered = await engine.signal_workflow(
        started.workflow_instance_id,
        "approval_document",
        {"is_approved": True, "approved_by": "lee", "comments": "Looks good"},
    )
    print(f"📬 Approval delivered: {delivered}")
    await engine.wait_for_background()

    state = await engine.get_workflow_state(started.workflow_instance_id)
    print(f"📄 Status: {state.status.value}, reviewed by {state.context.reviewed_by}")
    for entry in state.execution_history:
        print(f"   - {entry.step_name} [{entry.kind}] {entry.result.kind}")


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1] if len(sys.argv) > 1 else ""))
