from .base import *

DEBUG = False

SECRET_KEY = 'test-secret-key-for-the-storefront-suite-0123456789'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': ':memory:',
    }
}

ALLOWED_HOSTS = ['testserver']

PASSWORD_HASHERS = ['django.contrib.auth.hashers.MD5PasswordHasher']

EMAIL_BACKEND = 'django.core.mail.backends.locmem.EmailBackend'

CHANNEL_LAYERS = {'default': {'BACKEND': 'channels.layers.InMemoryChannelLayer'}}

FRONTEND_URL = 'https://shop.example.com'

KHALTI = {
    'BASE_URL': 'https://khalti.test/api/v2',
    'SECRET_KEY': 'test-khalti-secret',
    'RETURN_URL': 'https://api.example.com/api/payments/khalti/callback',
    'WEBSITE_URL': 'https://shop.example.com',
}

ESEWA = {
    'FORM_URL': 'https://esewa.test/api/epay/main/v2/form',
    'STATUS_URL': 'https://esewa.test/api/epay/transaction/status/',
    'PRODUCT_CODE': 'EPAYTEST',
    'SECRET_KEY': '8gBm/:&EnhH.1/q',
    'SUCCESS_URL': 'https://api.example.com/api/payments/esewa/success',
    'FAILURE_URL': 'https://shop.example.com/payment/failed',
}

PAYMENTS_ADMIN_EMAILS = 'ops@example.com'

LOGGING = {'version': 1, 'disable_existing_loggers': False}
