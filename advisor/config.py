import os
from dotenv import load_dotenv

load_dotenv()

config = {
    'openai_api_key': os.getenv('OPENAI_API_KEY'),
    'groq_api_key': os.getenv('GROQ_API_KEY'),
    'model': os.getenv('ADVISOR_MODEL'),
    'temperature': float(os.getenv('ADVISOR_TEMPERATURE', 0.3)),
    'chat_temperature': float(os.getenv('ADVISOR_CHAT_TEMPERATURE', 0.7)),
    'max_tokens': int(os.getenv('ADVISOR_MAX_TOKENS', 2048)),
    'timeout': int(os.getenv('ADVISOR_TIMEOUT', 60)),
    'transcript_token_budget': int(os.getenv('ADVISOR_TRANSCRIPT_TOKENS', 12000)),
    'encoding': os.getenv('ADVISOR_ENCODING', 'cl100k_base'),
}
