class Layer:
    """
    Common interface of the layers consumed by a network container.

    ``forward`` computes the output, ``backward`` the gradient with respect to
    the input and ``gradient`` the gradient with respect to the parameters.
    """

    def __init__(self):
        # Inference mode: no state is recorded for a later backward.
        self.deterministic = False

    def train(self):
        """Set layer to training mode."""
        self.deterministic = False
        return self

    def eval(self):
        """Set layer to inference mode."""
        self.deterministic = True
        return self

    @property
    def parameters(self):
        return None

    def forward(self, x):
        raise NotImplementedError

    def backward(self, *args, **kwargs):
        raise NotImplementedError

    def gradient(self, x, grad_output):
        raise NotImplementedError(f"{type(self).__name__} has no trainable parameters")

    def state_dict(self):
        raise NotImplementedError

    def load_state_dict(self, state):
        raise NotImplementedError

    def __call__(self, x):
        return self.forward(x)
