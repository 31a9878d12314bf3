"""Example showing a run being started, watched and stopped mid-flight."""

import asyncio

from autorun import AutorunConfig, RunDispatcher, StepExecutorRegistry

registry = StepExecutorRegistry()


@registry.step("generate_image")
async def generate_image(step, cancel_event):
    await asyncio.sleep(0.1)
    return {"url": f"https://cdn.example/{step.input['prompt']}.png"}


@registry.step("generate_video")
async def generate_video(step, cancel_event):
    # a long call that gives up once the run is stopped
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=30)
    except asyncio.TimeoutError:
        return {"url": "https://cdn.example/video.mp4"}


async def main():
    """Start a three step run and stop it while the video is generating."""
    dispatcher = RunDispatcher(executor=registry, config=AutorunConfig())

    handle = await dispatcher.start_run(
        "alice",
        [
            {"step_type": "generate_image", "input": {"prompt": "cat"}},
            {"step_type": "generate_video", "input": {"duration": 5}},
            {"step_type": "generate_image", "input": {"prompt": "dog"}},
        ],
    )
    stream = await dispatcher.subscribe_to_changes(handle.run_id)

    async def watch():
        async for event in stream:
            print(f"{event.entity_kind} {event.entity_id[:8]} -> {event.new_status}")

    watcher = asyncio.create_task(watch())
    await asyncio.sleep(0.3)
    result = await dispatcher.stop_run(handle.run_id, "alice")
    print(f"Stop: {result.message}")

    snapshot = await handle.wait()
    await watcher
    for step in snapshot.steps:
        print(f"[{step.ordinal}] {step.step_type}: {step.status.value} {step.result or ''}")

    async for entry in await dispatcher.read_logs(handle.run_id):
        print(f"{entry.level.value}: {entry.message}")

    await dispatcher.aclose()


if __name__ == "__main__":
    asyncio.run(main())
