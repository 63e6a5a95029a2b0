"""config URL Configuration

The `urlpatterns` list routes URLs to views. For more information please see:
    https://docs.djangoproject.com/en/4.2/topics/http/urls/
"""
import json
import logging

from django.contrib import admin
from django.urls import path
from django.views.decorators.csrf import csrf_exempt
from django.views.generic.base import RedirectView
from django.conf import settings
from graphene_django.views import GraphQLView

# Customize admin site
admin.site.site_header = "Haven Relay Admin"
admin.site.site_title = "Haven Relay Admin Portal"
admin.site.index_title = "Relay and claim ledger"

logger = logging.getLogger(__name__)

# Variables that carry credentials or signed payloads are never logged
REDACTED_VARIABLES = {'token', 'accessToken', 'signedTransaction'}


def redact_variables(variables):
    if not isinstance(variables, dict):
        return variables
    return {key: ('***' if key in REDACTED_VARIABLES else value) for key, value in variables.items()}


class LoggingGraphQLView(GraphQLView):
    def dispatch(self, request, *args, **kwargs):
        if request.method == 'POST':
            try:
                body = json.loads(request.body or b'{}')
                logger.info("GraphQL Operation: %s", body.get('operationName') or body.get('query', '')[:120])
                logger.info("GraphQL Variables: %s", redact_variables(body.get('variables') or {}))
            except (ValueError, AttributeError) as e:
                logger.error("Error parsing GraphQL request: %s", str(e))
        return super().dispatch(request, *args, **kwargs)


urlpatterns = [
    # Ensure /admin (no trailing slash) redirects to /admin/
    path('admin', RedirectView.as_view(url='/admin/', permanent=True)),
    path('admin/', admin.site.urls),
    path('graphql/', csrf_exempt(LoggingGraphQLView.as_view(graphiql=settings.DEBUG))),
]
