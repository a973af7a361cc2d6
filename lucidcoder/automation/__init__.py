"""
Goal automation: turn a goal prompt into applied, staged file edits.

    edits     — edit schema, LLM response parsing, search/replace engine
    scope     — scope reflection model and edit validation against it
    retry     — attempt sequences and retry-context carry-forward
    apply     — writes edits to disk and stages them on the working branch
    pipeline  — process_goal, the staged retry loop tying it together
"""
