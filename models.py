from pydantic import BaseModel, ConfigDict, EmailStr, Field
from typing import List, Literal, Optional
from datetime import datetime

ORDER_STATUSES = ("pending", "shipped", "delivered", "cancelled")
OrderStatus = Literal["pending", "shipped", "delivered", "cancelled"]


# ---------------- USERS ----------------
class SignupRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)

class LoginRequest(BaseModel):
    email: str
    password: str

class ForgotPasswordRequest(BaseModel):
    email: str

class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)

class UserOut(BaseModel):
    user_id: str
    email: EmailStr
    profile_picture: Optional[str] = None
    is_verified: bool = False
    is_admin: bool = False
    created_at: Optional[datetime] = None


# ---------------- CART ----------------
class CartItem(BaseModel):
    product_id: str = Field(..., min_length=1)
    name: str = ""
    price: float = Field(0, ge=0)
    image: Optional[str] = None
    quantity: int = Field(..., ge=1)
    # stock ceiling snapshot; None means no known ceiling
    stock: Optional[int] = Field(None, ge=0)

class AddToCartRequest(BaseModel):
    product_id: str = Field(..., min_length=1)

class SetQuantityRequest(BaseModel):
    quantity: int


# ---------------- ORDERS ----------------
class CheckoutRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    address: str = Field(..., min_length=1)
    payment_method: str = Field(..., min_length=1)

class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: Optional[str] = None

class Order(BaseModel):
    order_id: str
    user_id: str
    products: List[OrderItem]
    total_amount: float
    shipping_address: str
    payment_method: str
    status: OrderStatus = "pending"
    created_at: datetime

class DeleteOrderRequest(BaseModel):
    order_id: Optional[str] = None

class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# ---------------- PRODUCTS ----------------
class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    image: str = "/default-product.png"
    price: float = Field(..., ge=0)
    stock: int = Field(10, ge=0)
    category: Optional[str] = None

class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# ---------------- CONTACT ----------------
class ContactRequest(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    subject: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1)


# ---------------- JWT TOKENS ----------------
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"

class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None
    user: Optional[dict] = None

    @property
    def is_admin(self) -> bool:
        return bool(self.user and self.user.get("is_admin"))
