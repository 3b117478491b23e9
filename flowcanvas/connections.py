from __future__ import annotations

# (source type, target type) pairs the canvas accepts. Anything not listed
# here cannot be wired in the editor.
ALLOWED_CONNECTIONS: frozenset[tuple[str, str]] = frozenset(
    {
        ("imageImport", "motionPrompt"),
        ("imageImport", "nanoImage"),
        ("nanoImage", "nanoImage"),
        ("textPrompt", "imageImport"),
        ("textPrompt", "nanoImage"),
        ("textPrompt", "motionPrompt"),
        ("motionPrompt", "nanoImage"),
        ("motionPrompt", "geminiVideo"),
        ("nanoImage", "geminiVideo"),
        ("imageImport", "geminiVideo"),
        # Kling
        ("motionPrompt", "klingVideo"),
        ("textPrompt", "klingVideo"),
        ("nanoImage", "klingVideo"),
        ("imageImport", "klingVideo"),
        # Grid
        ("textPrompt", "gridNode"),
        ("motionPrompt", "gridNode"),
        ("gridNode", "nanoImage"),
        # Cell regenerator
        ("gridNode", "cellRegenerator"),
        ("nanoImage", "cellRegenerator"),
        ("imageImport", "cellRegenerator"),
        ("cellRegenerator", "nanoImage"),
        ("cellRegenerator", "imageImport"),
        # Grid composer
        ("gridNode", "gridComposer"),
        ("nanoImage", "gridComposer"),
        ("imageImport", "gridComposer"),
        ("cellRegenerator", "gridComposer"),
        ("gridComposer", "nanoImage"),
        ("gridComposer", "imageImport"),
        ("gridComposer", "geminiVideo"),
        ("gridComposer", "klingVideo"),
        # Sora
        ("motionPrompt", "soraVideo"),
        ("textPrompt", "soraVideo"),
        ("nanoImage", "soraVideo"),
        ("imageImport", "soraVideo"),
        ("gridComposer", "soraVideo"),
        ("llmPrompt", "soraVideo"),
        # LLM prompt helper
        ("textPrompt", "llmPrompt"),
        ("motionPrompt", "llmPrompt"),
        ("imageImport", "llmPrompt"),
        ("nanoImage", "llmPrompt"),
        ("gridComposer", "llmPrompt"),
        ("llmPrompt", "textPrompt"),
        ("llmPrompt", "nanoImage"),
        ("llmPrompt", "motionPrompt"),
        ("llmPrompt", "gridNode"),
        ("llmPrompt", "geminiVideo"),
        ("llmPrompt", "klingVideo"),
    }
)


def is_allowed(source_type: str | None, target_type: str | None) -> bool:
    if not source_type or not target_type:
        return False
    return (source_type, target_type) in ALLOWED_CONNECTIONS


def allowed_targets(source_type: str) -> list[str]:
    return sorted(target for source, target in ALLOWED_CONNECTIONS if source == source_type)
