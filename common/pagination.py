from rest_framework.pagination import PageNumberPagination


class StandardResultsSetPagination(PageNumberPagination):
    """Page-number pagination for ledger listings (materials, movements, production, audit logs).

    ``?page_size=`` is honoured up to ``max_page_size``.
    """

    page_size_query_param = "page_size"
    max_page_size = 500
