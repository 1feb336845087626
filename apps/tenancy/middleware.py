from django.utils.deprecation import MiddlewareMixin

from apps.tenancy.context import clear_active_scope, parse_company_id, set_active_scope

COMPANY_HEADER = "HTTP_X_COMPANY_ID"


class TenantContextMiddleware(MiddlewareMixin):
    """
    Hard reset of tenancy context per request, then bind the company named by
    the X-Company-Id header (unparseable => unbound, fail-closed).
    """

    def process_request(self, request):
        clear_active_scope()
        company_id = parse_company_id(request.META.get(COMPANY_HEADER))
        request.company_id = company_id
        set_active_scope(company_id)
        return None

    def process_response(self, request, response):
        clear_active_scope()
        return response
