"""
reporting.py — Read-side aggregation for the admin dashboard.

Every function takes plain lists of records from the stores and returns
JSON-ready dicts or lists. Nothing here writes.
"""

from collections import Counter, defaultdict

from .enums import OrderStatus, Role


def overview(orders, users, products, review_count: int) -> dict:
    total_orders = len(orders)
    completed = sum(1 for o in orders if o.status == OrderStatus.COMPLETED.value)
    rated = [p.average_rating or 0 for p in products]
    return {
        "totalRevenue": sum(o.total_amount or 0 for o in orders),
        "totalOrders": total_orders,
        "completedOrders": completed,
        "completionRate": round(completed / total_orders * 100, 1) if total_orders else 0,
        "totalCustomers": sum(1 for u in users if u.role == Role.CUSTOMER.value),
        "totalProducts": len(products),
        "averageRating": round(sum(rated) / len(rated), 2) if rated else 0,
        "totalReviews": review_count,
    }


def revenue_by_date(orders) -> list[dict]:
    """Revenue per calendar day, oldest first."""
    totals = defaultdict(int)
    for order in orders:
        totals[order.created_at.date().isoformat()] += order.total_amount or 0
    return [{"date": day, "revenue": totals[day]} for day in sorted(totals)]


def order_status_counts(orders) -> list[dict]:
    counts = {status.value: 0 for status in OrderStatus}
    for order in orders:
        status = order.status or OrderStatus.PENDING.value
        if status in counts:
            counts[status] += 1
    return [{"status": status, "count": count} for status, count in counts.items()]


def top_products(orders, limit: int = 10) -> list[dict]:
    """Products ranked by units sold across all orders."""
    quantities = Counter()
    names = {}
    for order in orders:
        for item in order.items or []:
            product_id = str(item.get("productId", "unknown"))
            quantities[product_id] += item.get("quantity") or 1
            names.setdefault(product_id, item.get("name") or "Unknown")
    return [
        {"productId": product_id, "name": names[product_id], "sales": sold}
        for product_id, sold in quantities.most_common(limit)
    ]


def customer_metrics(orders, users) -> dict:
    customers = [u for u in users if u.role == Role.CUSTOMER.value]
    customer_emails = {c.email for c in customers}
    per_customer = Counter(o.customer_email for o in orders if o.customer_email in customer_emails)

    one_time = sum(1 for count in per_customer.values() if count == 1)
    repeat = sum(1 for count in per_customer.values() if count > 1)
    total = len(customers)
    return {
        "totalCustomers": total,
        "oneTimeCustomers": one_time,
        "repeatCustomers": repeat,
        "repeatRate": round(repeat / total * 100, 1) if total else 0,
        "averageOrdersPerCustomer": round(len(orders) / total, 2) if total else 0,
    }


def payment_method_counts(orders) -> list[dict]:
    counts = Counter(o.payment_method or "Unknown" for o in orders)
    return [{"method": method, "count": count} for method, count in counts.items()]
