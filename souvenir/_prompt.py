"""Prompt templates used by souvenir.

Templates are formatted with ``str.format`` by ``format_and_send_prompt``, so literal
braces must be doubled. Any key can be overridden per call through ProcessParam.prompts.
"""

from typing import Dict

PROMPTS: Dict[str, str] = {}

PROMPTS["entity_extraction"] = """Extract key entities from the following text. Identify important people, organizations, locations, concepts, events, dates, technologies, and other significant entities.

Be thorough but accurate. Only extract entities that are clearly mentioned or strongly implied in the text.

Text:
{content}"""

PROMPTS["relationship_extraction"] = """Given the following entities: {entities}

Extract meaningful relationships between these entities from the text below. Focus on direct relationships that are explicitly stated or strongly implied. Only use the entities listed above as source and target.

Types of relationships to consider: related_to, part_of, caused_by, enables, requires, met, located_in, and other short descriptive types.

Assign a weight between 0 and 1 to indicate the strength of each relationship (1 = very strong, 0 = weak).

Text:
{content}"""

PROMPTS["summarization"] = """Provide a concise summary of the following text. Keep it under {max_length} characters while capturing the key information and main ideas.

Text:
{content}"""

PROMPTS["qa"] = """Answer the following question using the provided context. Be concise and direct. If the answer cannot be determined from the context, say so clearly.

Context:
{context}

Question: {question}"""

PROMPTS["fail_response"] = "Sorry, I'm not able to provide an answer to that question."

PROMPTS["empty_context"] = "No relevant context found."
