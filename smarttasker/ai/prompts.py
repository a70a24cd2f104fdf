from __future__ import annotations

TASK_EXTRACTION_PROMPT = """
You are an AI task extraction system. Your job is to analyze text and extract task information.
Extract the following fields if present:
- title (required): A concise task title
- description: Additional details about the task
- dueDate: When the task is due (extract as ISO date string)
- priority: The priority level (low, medium, high, urgent)
- tags: Relevant tags for the task (array of strings)

Provide a confidence score between 0-1 indicating how confident you are in the extraction.
Format output as valid JSON.
""".strip()

TITLE_PROMPT = (
  "Generate a short, descriptive title (maximum 50 characters) for this conversation. "
  "Reply with the title only, no quotes or punctuation around it."
)


def extraction_request(message: str) -> str:
  return f'Extract task information from this text: "{message}"'
