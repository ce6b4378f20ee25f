"""Example: a release-notes workflow with an approval gate.

Runs fully offline using pydantic-ai's ``TestModel``. Swap the model for a real
one (e.g. ``"openai:gpt-4o"``) to let an actual agent draft the notes.
"""

import asyncio

from pydantic_ai.models.test import TestModel

from flowledger import PydanticAIPromptExecutor, WorkflowDraftInput, WorkflowService
from flowledger.persistence import InMemoryWorkflowStore

RELEASE_NOTES = {
    "name": "Release notes",
    "description": "Draft release notes, wait for sign-off, then announce them",
    "nodes": [
        {"id": "start", "type": "start"},
        {
            "id": "draft",
            "type": "agent_step",
            "config": {"prompt_template": "Draft release notes for {{run.input.version}}"},
        },
        {"id": "sign_off", "type": "approval", "config": {"reason": "Review the draft notes"}},
        {
            "id": "announce",
            "type": "notification",
            "config": {"channel": "#releases", "message": "{{nodes.draft.text}}"},
            "retry_profile": "fast_safe",
        },
        {"id": "end", "type": "end"},
    ],
    "edges": [
        {"id": "e1", "from": "start", "to": "draft"},
        {"id": "e2", "from": "draft", "to": "sign_off"},
        {"id": "e3", "from": "sign_off", "to": "announce"},
        {"id": "e4", "from": "announce", "to": "end"},
    ],
}


async def main():
    """Create, publish and run the workflow, approving it halfway."""
    store = InMemoryWorkflowStore()
    executor = PydanticAIPromptExecutor(model=TestModel(custom_output_text="v1.4: faster resumes"))
    service = WorkflowService(store, execute_agent_prompt=executor)

    draft = await service.create_draft(WorkflowDraftInput.model_validate(RELEASE_NOTES), created_by="guide")
    published = await service.publish(draft.id)
    print(f"📄 Published {published.id} version {published.version}")

    run = await service.start_run(published.id, input={"version": "1.4"})
    print(f"⏸️  Run {run.id} is {run.status.value} at node {run.current_node_id}")

    run = await service.approve(run.id)
    print(f"✅ Run {run.id} is {run.status.value}")

    details = await service.get_run(run.id)
    for node_run in details.node_runs:
        print(f"   - {node_run.node_id} #{node_run.attempt}: {node_run.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
