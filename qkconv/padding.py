import numpy as np

from qkconv.errors import InvalidPadding, ShapeMismatch


class Padding:
    """Zero padding of a 2D slice with independent sizes on every side."""

    def __init__(self, pad_w_left=0, pad_w_right=0, pad_h_top=0, pad_h_bottom=0):
        for name, value in (("pad_w_left", pad_w_left), ("pad_w_right", pad_w_right),
                            ("pad_h_top", pad_h_top), ("pad_h_bottom", pad_h_bottom)):
            if value < 0:
                raise InvalidPadding(f"{name} must be non-negative, got {value}")
        self.pad_w_left = int(pad_w_left)
        self.pad_w_right = int(pad_w_right)
        self.pad_h_top = int(pad_h_top)
        self.pad_h_bottom = int(pad_h_bottom)

    @property
    def is_zero(self):
        return not (self.pad_w_left or self.pad_w_right or self.pad_h_top or self.pad_h_bottom)

    def padded_shape(self, height, width):
        return (height + self.pad_h_top + self.pad_h_bottom,
                width + self.pad_w_left + self.pad_w_right)

    def forward(self, x):
        """Return ``x`` surrounded by a zero border."""
        return np.pad(x, ((self.pad_h_top, self.pad_h_bottom),
                          (self.pad_w_left, self.pad_w_right)), mode='constant')

    def forward_into(self, x, out):
        """Write the padded ``x`` into the preallocated slice ``out``."""
        height, width = x.shape
        if out.shape != self.padded_shape(height, width):
            raise ShapeMismatch(
                f"Padded slice has shape {out.shape}, expected {self.padded_shape(height, width)}")
        out.fill(0)
        out[self.pad_h_top:self.pad_h_top + height, self.pad_w_left:self.pad_w_left + width] = x
        return out

    def backward(self, grad_output):
        """Strip the border: the gradient of zero padding."""
        height = grad_output.shape[0] - self.pad_h_top - self.pad_h_bottom
        width = grad_output.shape[1] - self.pad_w_left - self.pad_w_right
        return grad_output[self.pad_h_top:self.pad_h_top + height,
                           self.pad_w_left:self.pad_w_left + width]

    def state_dict(self):
        return {
            "pad_w_left": self.pad_w_left,
            "pad_w_right": self.pad_w_right,
            "pad_h_top": self.pad_h_top,
            "pad_h_bottom": self.pad_h_bottom,
        }

    def load_state_dict(self, state):
        restored = Padding(state["pad_w_left"], state["pad_w_right"],
                           state["pad_h_top"], state["pad_h_bottom"])
        self.__dict__.update(restored.__dict__)

    def __repr__(self):
        return (f"Padding(left={self.pad_w_left}, right={self.pad_w_right}, "
                f"top={self.pad_h_top}, bottom={self.pad_h_bottom})")
