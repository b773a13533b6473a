"""Defaults shared by the pipeline and the CLI. Every value can be overridden per run."""

DEFAULT_API_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MAX_TOKENS = 1024
DEFAULT_TIMEOUT = 60.0
DEFAULT_JPEG_QUALITY = 85
DEFAULT_IMAGE_EXTENSIONS = "jpg,jpeg,png,webp,gif,bmp,tif,tiff,heic,avif"

# Model ids are matched against these when filtering the provider's listing.
VISION_MODEL_PREFIXES = (
    "gpt-4o",
    "gpt-4.1",
    "gpt-4-turbo",
    "gpt-5",
    "chatgpt-4o",
    "o1",
    "o3",
    "o4",
)
VISION_MODEL_MARKERS = ("vision",)
NON_VISION_MODEL_MARKERS = ("audio", "realtime", "transcribe", "tts", "search")

# Prompt template
DEFAULT_PROMPT = """You are an expert stock photography metadata analyst. Analyze the provided image and generate a commercially optimized Title, Description, and Keywords for Adobe Stock.
Constraints:
- Title: up to 140 characters (ideally 70-120), natural and descriptive. Must clearly state the subject, action, and key details. Should not be just a keyword list.
- Description: up to 160 characters, concise and SEO-friendly. Reinforce the main concepts of the image.
- Keywords: between 27 and 40 unique, high-quality terms.
  - Order matters: put the most important and relevant words in the first 10 keywords (they carry extra weight).
  - Include a mix of:
    - Direct content (objects, people, actions, colors, location)
    - Specific details (indoor/outdoor, time of day, quantity of people, mood)
    - Abstract concepts (success, leadership, growth, happiness, etc.)
  - No duplicates, no irrelevant or generic terms, no brand names.
  - Use single words or short phrases (not long sentences).
Output Format:
Return the result in a valid JSON object with the following keys:
- "title"
- "description"
- "keywords" (as a JSON array of 27-40 items in priority order, most important first)"""  # noqa: E501
