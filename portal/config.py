import os
from dotenv import load_dotenv

load_dotenv()

config = {
    'db_path': os.getenv('PORTAL_DB_PATH', 'portal.db'),
    'database_url': os.getenv('PORTAL_DATABASE_URL'),
    'cache_dir': os.getenv('PORTAL_CACHE_DIR', '.portal_cache'),
    'storage_dir': os.getenv('PORTAL_STORAGE_DIR', 'uploads'),
    'storage_bucket': os.getenv('PORTAL_STORAGE_BUCKET', 'notes'),
    'public_base_url': os.getenv('PORTAL_PUBLIC_BASE_URL', 'http://localhost:8000/storage'),
    'completion_delay': float(os.getenv('PORTAL_COMPLETION_DELAY', 1.5)),
}
