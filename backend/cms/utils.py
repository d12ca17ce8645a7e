from django.utils.text import slugify


def unique_slug(model, tenant, value: str, *, exclude_pk=None, field: str = "slug", **scope) -> str:
    """
    Slugify `value` and append -1, -2, ... until no row of `model` in the
    tenant (and the extra `scope` filters) uses it.
    """
    base = slugify(value or "")[:150] or "item"
    qs = model._default_manager.filter(tenant=tenant, **scope)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    taken = set(qs.filter(**{f"{field}__startswith": base}).values_list(field, flat=True))
    slug, counter = base, 1
    while slug in taken:
        slug = f"{base}-{counter}"
        counter += 1
    return slug
