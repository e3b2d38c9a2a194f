import os
import django

# Configure Django settings before any tests are run
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'batch_routing.tests.test_settings')
django.setup()
