"""
Refund reconciliation endpoints
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional

from shopmirror.connectors.errors import ConfigurationError, RateLimitError, ShopifyAPIError
from shopmirror.services.refund_reconciliation import OrderNotFoundError, RefundReconciliationService
from shopmirror.utils.logger import log

router = APIRouter(prefix="/refunds", tags=["refunds"])

_reconciler: Optional[RefundReconciliationService] = None


def get_reconciler() -> RefundReconciliationService:
    global _reconciler
    if _reconciler is None:
        _reconciler = RefundReconciliationService()
    return _reconciler


@router.post("/reconcile")
async def reconcile_refunds(
    store_id: Optional[str] = Query(None),
    days: Optional[int] = Query(None, ge=1, le=730, description="Only orders created in the last N days"),
    order_ids: Optional[List[int]] = Query(None, description="Explicit orders to reconcile"),
    dry_run: bool = Query(False, description="Compute without writing"),
    reconciler: RefundReconciliationService = Depends(get_reconciler)
):
    """
    Recompute total_refunds for orders flagged as potentially refunded.
    Returns the per-order and batch component breakdown.
    """
    try:
        report = await reconciler.reconcile_orders(
            store_id=store_id,
            days=days,
            order_ids=order_ids,
            dry_run=dry_run
        )
        if report['error']:
            raise HTTPException(status_code=400, detail=report['error'])
        return report
    except HTTPException:
        raise
    except Exception as e:
        log.error(f"Error reconciling refunds: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/orders/{order_id}/reconcile")
async def reconcile_order_refunds(
    order_id: int,
    dry_run: bool = Query(False),
    reconciler: RefundReconciliationService = Depends(get_reconciler)
):
    """Recompute total_refunds for one order"""
    try:
        return await reconciler.reconcile_order(order_id, dry_run=dry_run)
    except OrderNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RateLimitError as e:
        raise HTTPException(status_code=429, detail=str(e))
    except ShopifyAPIError as e:
        log.error(f"Shopify error reconciling order {order_id}: {str(e)}")
        raise HTTPException(status_code=502, detail=str(e))
    except Exception as e:
        log.error(f"Error reconciling order {order_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/total-returns")
async def get_total_returns(
    store_id: Optional[str] = Query(None),
    days: int = Query(30, ge=1, le=730),
    reconciler: RefundReconciliationService = Depends(get_reconciler)
):
    """Store-wide total returns from persisted order refunds"""
    try:
        return reconciler.total_returns(store_id, days)
    except Exception as e:
        log.error(f"Error getting total returns: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
