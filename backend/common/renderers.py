from rest_framework.renderers import BaseRenderer


class CSVRenderer(BaseRenderer):
    """
    Lets `?format=csv` pass content negotiation. Views build the CSV body
    themselves and return it as a plain HttpResponse.
    """
    media_type = "text/csv"
    format = "csv"
    charset = "utf-8"

    def render(self, data, accepted_media_type=None, renderer_context=None):
        if isinstance(data, str):
            return data.encode(self.charset)
        return b""
