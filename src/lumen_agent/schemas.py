"""JSON Schemas (Draft-07) for oracle replies."""

ACTION_SCHEMA = {
    "type": "object",
    "oneOf": [
        {
            "properties": {
                "kind": {"const": "command"},
                "command": {"type": "string", "minLength": 1},
                "reasoning": {"type": "string"},
            },
            "required": ["kind", "command"],
        },
        {
            "properties": {
                "kind": {"const": "code"},
                "code": {"type": "string"},
                "language": {"type": "string"},
            },
            "required": ["kind", "code"],
        },
        {
            "properties": {
                "kind": {"const": "message"},
                "text": {"type": "string"},
            },
            "required": ["kind", "text"],
        },
    ],
}

# Legacy agent reply shape ("choice" discriminator)
LEGACY_ACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "choice": {"enum": ["terminalCommand", "code", "response"]},
        "terminalCommand": {"type": "string"},
        "commandReasoning": {"type": "string"},
        "code": {"type": "string"},
        "response": {"type": "string"},
    },
    "required": ["choice"],
}

PLAN_REVISION_SCHEMA = {
    "type": "object",
    "properties": {
        "steps": {
            "type": "array",
            "items": {"type": "string", "minLength": 1},
        },
        "reasoning": {"type": "string"},
    },
    "required": ["steps"],
}

VERIFICATION_SCHEMA = {
    "type": "object",
    "properties": {
        "fulfilled": {"type": "boolean"},
        "issues": {
            "type": "array",
            "items": {"type": "string"},
        },
        "analysis": {"type": "string"},
    },
    "required": ["fulfilled", "issues"],
}
